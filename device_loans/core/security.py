# device_loans/core/security.py
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from fastapi import Request
from jose import ExpiredSignatureError, JWTError, jwt

from device_loans.core.errors import Forbidden, Unauthorized

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    subject: str
    expires_at: float


class TokenCache:
    """
    Bounded TTL cache of verified bearer tokens -> subject.

    An entry never outlives the token's own `exp` claim. Owned by whoever
    builds the IdentityVerifier; there is no module-level instance.
    """

    def __init__(self, ttl_seconds: int = 300, max_entries: int = 1024, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, token: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(token)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[token]
                return None
            return entry.subject

    def put(self, token: str, subject: str, token_exp: Optional[float] = None) -> None:
        if self.ttl_seconds <= 0:
            return
        expires_at = self._clock() + self.ttl_seconds
        if token_exp is not None:
            expires_at = min(expires_at, float(token_exp))
        with self._lock:
            if len(self._entries) >= self.max_entries and token not in self._entries:
                # Evict the entry closest to expiry
                oldest = min(self._entries, key=lambda k: self._entries[k].expires_at)
                del self._entries[oldest]
            self._entries[token] = CacheEntry(subject=subject, expires_at=expires_at)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, v in self._entries.items() if v.expires_at <= now]
            for k in expired:
                del self._entries[k]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class IdentityVerifier:
    """Validates a bearer JWT and yields its `sub` claim as the user id."""

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        audience: Optional[str] = None,
        issuer: Optional[str] = None,
        cache: Optional[TokenCache] = None,
    ):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.audience = audience
        self.issuer = issuer
        self.cache = cache

    def verify(self, token: str) -> str:
        if not token:
            raise Unauthorized("No token provided")

        if self.cache is not None:
            cached = self.cache.get(token)
            if cached is not None:
                return cached

        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options={"verify_aud": self.audience is not None},
            )
        except ExpiredSignatureError:
            logger.info("Token rejected: expired.")
            raise Unauthorized("Token has expired")
        except JWTError as e:
            logger.warning(f"Token rejected: {e}")
            raise Unauthorized("Invalid or expired token")

        subject = payload.get("sub")
        if not subject or not isinstance(subject, str):
            logger.warning("Token rejected: 'sub' claim missing.")
            raise Unauthorized("Token missing user ID (sub claim)")

        if self.cache is not None:
            self.cache.put(token, subject, payload.get("exp"))
        return subject


# --- Dependencies (the AuthMiddleware populates request.state) ---
def get_current_subject(request: Request) -> str:
    """Authenticated user id. Raises 401 when the request has no valid bearer token."""
    subject: Optional[str] = getattr(request.state, "subject", None)
    if not subject:
        reason = getattr(request.state, "auth_error", None) or "Not authenticated"
        raise Unauthorized(reason)
    return subject


def get_optional_subject(request: Request) -> Optional[str]:
    return getattr(request.state, "subject", None)


def ensure_same_user(subject: str, user_id: Optional[str], message: str) -> None:
    if subject != user_id:
        logger.warning(f"Access denied: subject '{subject}' acting for '{user_id}'.")
        raise Forbidden(message)
