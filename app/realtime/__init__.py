"""Live delivery of ticket messages."""

from .channel import MessageCallback, RealtimeChannel, Subscription

__all__ = ["MessageCallback", "RealtimeChannel", "Subscription"]
