"""Resolve who is calling and whether they hold trader privileges."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from .tokens import SessionTokenCodec

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Identity:
    """Caller identity as supplied by the external login provider."""

    id: str
    display_name: str


class PrivilegePolicy:
    """Static allow-list of trader identities.

    Built once at process start. An empty allow-list grants nobody privilege.
    """

    def __init__(self, privileged_ids: Iterable[str]) -> None:
        self._privileged_ids = frozenset(item.strip() for item in privileged_ids if item and item.strip())
        if not self._privileged_ids:
            logger.warning("Trader allow-list is empty; no identity will be treated as privileged.")

    @property
    def privileged_ids(self) -> frozenset[str]:
        return self._privileged_ids

    def is_privileged(self, identity: Identity | None) -> bool:
        if identity is None or not self._privileged_ids:
            return False
        return identity.id in self._privileged_ids


class IdentityContext:
    """Identity of the current caller, derived from their session credential."""

    def __init__(self, credential: str | None, *, codec: "SessionTokenCodec", policy: PrivilegePolicy) -> None:
        self._credential = credential
        self._codec = codec
        self._policy = policy
        self._resolved = False
        self._identity: Identity | None = None

    def current_identity(self) -> Identity | None:
        if not self._resolved:
            self._identity = self._resolve()
            self._resolved = True
        return self._identity

    def is_privileged(self) -> bool:
        return self._policy.is_privileged(self.current_identity())

    def _resolve(self) -> Identity | None:
        from .tokens import InvalidSessionToken

        if not self._credential:
            return None
        try:
            return self._codec.decode(self._credential)
        except InvalidSessionToken as exc:
            logger.info("Ignoring invalid session credential: %s", exc)
            return None
