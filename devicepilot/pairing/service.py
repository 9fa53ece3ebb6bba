"""
Minimal in-memory device pairing and credential store.

A signed-in user creates a short-lived 6-digit code; the phone claims it
(unauthenticated, rate-limited per source) and receives a long-lived device
credential plus the WebSocket endpoint. Credentials are stored only as
sha256 digests and map to exactly one user and one stable device id.
"""

from __future__ import annotations

import hashlib
import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

from devicepilot.utils.logger import StructuredLogger
from devicepilot.utils.polling import SYSTEM_CLOCK, Clock

CODE_TTL_SECONDS = 5 * 60
CLAIM_LIMIT = 5
CLAIM_WINDOW_SECONDS = 60.0
CREDENTIAL_PREFIX = "dp_"

_CODE_PATTERN = re.compile(r"^\d{6}$")


class PairingError(Exception):
    """Base class for pairing failures."""


class InvalidPairingCode(PairingError):
    """Malformed, unknown, expired, or already-claimed code."""


class PairingRateLimited(PairingError):
    """Too many claim attempts from one source."""


def hash_credential(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, timezone.utc).isoformat()


@dataclass(frozen=True)
class CredentialRecord:
    user_id: str
    device_id: str
    created_at: float


@dataclass(frozen=True)
class IssuedCredential:
    api_key: str
    user_id: str
    device_id: str


class CredentialStore:
    """Device credentials keyed by sha256 digest."""

    def __init__(self, *, clock: Clock = SYSTEM_CLOCK) -> None:
        self._clock = clock
        self._records: Dict[str, CredentialRecord] = {}

    def issue(self, user_id: str) -> IssuedCredential:
        api_key = CREDENTIAL_PREFIX + secrets.token_urlsafe(32)
        device_id = uuid.uuid4().hex
        self.add(api_key, user_id=user_id, device_id=device_id)
        return IssuedCredential(api_key=api_key, user_id=user_id, device_id=device_id)

    def add(self, api_key: str, *, user_id: str, device_id: str) -> CredentialRecord:
        if not api_key:
            raise ValueError("api_key must be a non-empty string.")
        record = CredentialRecord(user_id=user_id, device_id=device_id, created_at=self._clock.time())
        self._records[hash_credential(api_key)] = record
        return record

    def authenticate(self, api_key: Optional[str]) -> Optional[CredentialRecord]:
        if not api_key:
            return None
        return self._records.get(hash_credential(api_key))

    def revoke(self, api_key: str) -> bool:
        return self._records.pop(hash_credential(api_key), None) is not None

    def __len__(self) -> int:
        return len(self._records)


class ClaimRateLimiter:
    """Fixed-window attempt counter per source."""

    def __init__(
        self,
        *,
        limit: int = CLAIM_LIMIT,
        window: float = CLAIM_WINDOW_SECONDS,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        self._limit = limit
        self._window = window
        self._clock = clock
        self._attempts: Dict[str, Tuple[int, float]] = {}

    def allow(self, source: str) -> bool:
        now = self._clock.monotonic()
        self._prune(now)
        count, reset_at = self._attempts.get(source, (0, now + self._window))
        count += 1
        self._attempts[source] = (count, reset_at)
        return count <= self._limit

    def _prune(self, now: float) -> None:
        stale = [source for source, (_, reset_at) in self._attempts.items() if now > reset_at]
        for source in stale:
            del self._attempts[source]


@dataclass(frozen=True)
class PairingCode:
    code: str
    user_id: str
    expires_at: float

    def to_payload(self) -> Dict[str, str]:
        return {"code": self.code, "expiresAt": _iso(self.expires_at)}


def _random_code() -> str:
    return str(100_000 + secrets.randbelow(900_000))


class PairingService:
    """
    One active code per user; codes are single use and expire after `ttl`.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        *,
        clock: Clock = SYSTEM_CLOCK,
        ttl: float = CODE_TTL_SECONDS,
        rate_limiter: Optional[ClaimRateLimiter] = None,
        code_factory: Callable[[], str] = _random_code,
    ) -> None:
        self._credentials = credentials
        self._clock = clock
        self._ttl = ttl
        self._rate_limiter = rate_limiter or ClaimRateLimiter(clock=clock)
        self._code_factory = code_factory
        self._by_user: Dict[str, PairingCode] = {}
        self._by_code: Dict[str, PairingCode] = {}
        self._logger = StructuredLogger(__name__)

    @property
    def credentials(self) -> CredentialStore:
        return self._credentials

    def create(self, user_id: str) -> PairingCode:
        self._discard_for_user(user_id)
        code = self._code_factory()
        while code in self._by_code:
            code = self._code_factory()
        record = PairingCode(code=code, user_id=user_id, expires_at=self._clock.time() + self._ttl)
        self._by_user[user_id] = record
        self._by_code[code] = record
        self._logger.info(f"Pairing code created for user {user_id}")
        return record

    def status(self, user_id: str) -> Dict[str, bool]:
        """`paired` is true once no code record remains for the user."""
        record = self._by_user.get(user_id)
        if record is None:
            return {"paired": True}
        return {"paired": False, "expired": record.expires_at <= self._clock.time()}

    def claim(self, code: Optional[str], *, source: str = "unknown") -> IssuedCredential:
        if not self._rate_limiter.allow(source):
            raise PairingRateLimited("Too many attempts. Try again in a minute.")
        cleaned = (code or "").strip()
        if not _CODE_PATTERN.match(cleaned):
            raise InvalidPairingCode("Invalid code format")
        record = self._by_code.get(cleaned)
        if record is None or record.expires_at <= self._clock.time():
            raise InvalidPairingCode("Invalid or expired code")

        self._discard_for_user(record.user_id)
        issued = self._credentials.issue(record.user_id)
        self._logger.info(f"Pairing code claimed: user={record.user_id} device={issued.device_id}")
        return issued

    def _discard_for_user(self, user_id: str) -> None:
        existing = self._by_user.pop(user_id, None)
        if existing is not None:
            self._by_code.pop(existing.code, None)


__all__ = [
    "ClaimRateLimiter",
    "CredentialRecord",
    "CredentialStore",
    "InvalidPairingCode",
    "IssuedCredential",
    "PairingCode",
    "PairingError",
    "PairingRateLimited",
    "PairingService",
    "hash_credential",
]
