"""Caller identity and trader privilege resolution."""

from .context import Identity, IdentityContext, PrivilegePolicy
from .tokens import InvalidSessionToken, SessionTokenCodec

__all__ = [
    "Identity",
    "IdentityContext",
    "InvalidSessionToken",
    "PrivilegePolicy",
    "SessionTokenCodec",
]
