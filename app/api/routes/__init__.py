"""API route modules."""

from . import ping, tickets

__all__ = ["ping", "tickets"]
