from __future__ import annotations

import logging
import secrets

from ..clock import SYSTEM_CLOCK, Clock
from ..domain.entities import (
    PAYLOAD_TYPES,
    ConfirmationToken,
    TokenError,
    TokenKind,
    TokenPayload,
)
from ..errors import PayloadError

logger = logging.getLogger(__name__)


class ConfirmationTokenStore:
    """Short-lived, single-use tokens, one store per kind.

    Every ``issue`` and ``consume`` first sweeps expired tokens out of all
    stores; a token older than ``ttl`` seconds is gone.
    """

    def __init__(self, ttl: float = 300.0, clock: Clock = SYSTEM_CLOCK) -> None:
        self.ttl = ttl
        self.clock = clock
        self._stores: dict[TokenKind, dict[str, ConfirmationToken]] = {kind: {} for kind in TokenKind}

    def issue(self, kind: TokenKind | str, owner_id: str, payload: TokenPayload) -> str:
        kind = coerce_kind(kind)
        expected = PAYLOAD_TYPES[kind]
        if not isinstance(payload, expected):
            raise PayloadError(
                f"{kind.value} token needs a {expected.__name__} payload, got {type(payload).__name__}"
            )
        self.sweep()
        token = secrets.token_urlsafe(16)
        self._stores[kind][token] = ConfirmationToken(
            token=token,
            kind=kind,
            owner_id=owner_id,
            payload=payload,
            issued_at=self.clock.now(),
        )
        return token

    def consume(self, kind: TokenKind | str, token: str, requester_id: str) -> TokenPayload | TokenError:
        kind = coerce_kind(kind)
        self.sweep()
        entry = self._stores[kind].pop(token, None)
        if entry is None:
            return TokenError.INVALID_OR_EXPIRED
        if entry.owner_id != requester_id:
            logger.warning(
                "%s token presented by %s but issued to %s; token destroyed",
                kind.value,
                requester_id,
                entry.owner_id,
            )
            return TokenError.NOT_AUTHORIZED
        return entry.payload

    def discard(self, kind: TokenKind | str, token: str) -> bool:
        return self._stores[coerce_kind(kind)].pop(token, None) is not None

    def sweep(self) -> int:
        now = self.clock.now()
        removed = 0
        for store in self._stores.values():
            expired = [key for key, entry in store.items() if now - entry.issued_at > self.ttl]
            for key in expired:
                del store[key]
            removed += len(expired)
        return removed

    def count(self, kind: TokenKind | str | None = None) -> int:
        if kind is None:
            return sum(len(store) for store in self._stores.values())
        return len(self._stores[coerce_kind(kind)])


def coerce_kind(kind: TokenKind | str) -> TokenKind:
    try:
        return TokenKind(kind)
    except ValueError as exc:
        raise PayloadError(f"Unknown token kind {kind!r}") from exc
