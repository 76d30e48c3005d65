"""Bearer token issuance and verification.

Verified tokens are remembered in a process-wide cache until their own `exp`
so repeated requests skip signature checks. The cache is a latency
optimization only: it is not a session store, it is lost on restart, and it
cannot revoke anything. Tokens stay valid until they expire; logout is a
client-side concern.
"""

from __future__ import annotations

import heapq
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import jwt

from bucket_auth.util.time import epoch_seconds

from .security import create_access_token, decode_access_token


@dataclass(frozen=True)
class TokenVerification:
    success: bool
    claims: Optional[Dict[str, Any]] = None
    # Stable code on failure: missing_token | token_expired | token_invalid
    reason: Optional[str] = None
    message: Optional[str] = None


class TokenCache:
    """token -> claims, each entry dropped once its `exp` has passed.

    Route handlers run on a thread pool, so the map is guarded by a lock.
    Expiry uses a min-heap of (exp, token) purged on every access instead of
    one timer per token.
    """

    def __init__(self, max_entries: int = 10000, clock: Callable[[], float] = epoch_seconds):
        self.max_entries = max(1, int(max_entries))
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[float, Dict[str, Any]]] = {}
        self._expiry: List[Tuple[float, str]] = []

    def _purge(self, now: float) -> None:
        while self._expiry and self._expiry[0][0] <= now:
            _exp, token = heapq.heappop(self._expiry)
            entry = self._entries.get(token)
            if entry is not None and entry[0] <= now:
                del self._entries[token]

    def _evict_soonest(self) -> None:
        while self._expiry:
            _exp, token = heapq.heappop(self._expiry)
            if self._entries.pop(token, None) is not None:
                return

    def get(self, token: str) -> Optional[Dict[str, Any]]:
        now = self._clock()
        with self._lock:
            self._purge(now)
            entry = self._entries.get(token)
            if entry is None:
                return None
            return dict(entry[1])

    def put(self, token: str, claims: Dict[str, Any]) -> None:
        try:
            exp = float(claims.get("exp") or 0)
        except (TypeError, ValueError):
            return
        now = self._clock()
        if exp <= now:
            return
        with self._lock:
            self._purge(now)
            # Entries are immutable once inserted.
            if token in self._entries:
                return
            while len(self._entries) >= self.max_entries:
                self._evict_soonest()
            self._entries[token] = (exp, dict(claims))
            heapq.heappush(self._expiry, (exp, token))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._expiry.clear()

    def __len__(self) -> int:
        now = self._clock()
        with self._lock:
            self._purge(now)
            return len(self._entries)


TOKEN_CACHE = TokenCache()


def issue_token(user: Dict[str, Any], *, secret: str, expires_minutes: int) -> str:
    """Sign a token carrying the subject id, username, email and role."""
    return create_access_token(
        secret=secret,
        user_id=str(user.get("id")),
        username=str(user.get("username") or ""),
        email=str(user.get("email") or ""),
        role=str(user.get("role") or "user"),
        expires_minutes=expires_minutes,
    )


def verify_token(token: str | None, *, secret: str, cache: TokenCache | None = None) -> TokenVerification:
    if not token:
        return TokenVerification(success=False, reason="missing_token", message="Authentication required")

    c = cache if cache is not None else TOKEN_CACHE
    cached = c.get(token)
    if cached is not None:
        return TokenVerification(success=True, claims=cached)

    try:
        claims = decode_access_token(token=token, secret=secret)
    except jwt.ExpiredSignatureError:
        return TokenVerification(success=False, reason="token_expired", message="Token has expired")
    except (jwt.InvalidTokenError, ValueError) as e:
        return TokenVerification(success=False, reason="token_invalid", message=str(e) or "Invalid token")

    c.put(token, claims)
    return TokenVerification(success=True, claims=claims)
