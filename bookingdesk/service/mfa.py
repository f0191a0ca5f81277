from __future__ import annotations

import base64
import hashlib
import hmac
import os
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Protocol, Tuple, Union
from urllib.parse import quote, urlencode

from bookingdesk.config import Settings
from bookingdesk.logging import get_logger
from bookingdesk.service.errors import InvalidMfaCodeError, MfaEnrollmentFailedError
from bookingdesk.storage.errors import ConstraintViolation
from bookingdesk.storage.models import Identity, MFAFactor
from bookingdesk.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6


class MFAStore(Protocol):
    def get_user(self, user_id: str) -> Optional[Identity]: ...

    def create_mfa_factor(
        self, user_id: str, secret: str, *, friendly_name: str = "Authenticator"
    ) -> MFAFactor: ...

    def get_mfa_factor(self, factor_id: str) -> Optional[MFAFactor]: ...

    def get_mfa_factor_secret(self, factor_id: str) -> Optional[str]: ...

    def list_mfa_factors(self, user_id: str) -> List[MFAFactor]: ...

    def mark_mfa_factor_verified(self, factor_id: str) -> Optional[MFAFactor]: ...

    def delete_mfa_factor(self, factor_id: str) -> bool: ...

    def delete_user_mfa_factors(self, user_id: str) -> int: ...


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    """RFC 6238 code for ``secret`` at ``timestamp`` (HMAC-SHA1, as authenticator apps expect)."""
    padded = secret + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except Exception:
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def is_code_format(code: Optional[str]) -> bool:
    return bool(code) and len(code) == TOTP_DIGITS and code.isdigit()


@dataclass
class Enrollment:
    factor_id: str
    secret: str
    qr_payload: str


class MFAService:
    """TOTP factor lifecycle: list, enroll, challenge, verify, revoke.

    Challenges are single-use: ``verify`` consumes the challenge whether or
    not the code matches, so each attempt needs a fresh ``challenge`` call.
    """

    def __init__(
        self,
        store: MFAStore,
        cache: Optional[Union[RedisCache, SyncRedisCache]],
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store: MFAStore = store
        self.cache = cache
        self.settings = settings
        self._clock = clock
        self._state_lock = threading.Lock()
        self._challenges: Dict[str, Tuple[str, datetime]] = {}

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def list_factors(self, user_id: str) -> List[MFAFactor]:
        return self.store.list_mfa_factors(user_id)

    async def enroll(
        self, user_id: str, *, friendly_name: str = "Authenticator"
    ) -> Enrollment:
        user = self.store.get_user(user_id)
        if not user:
            raise MfaEnrollmentFailedError("identity not found for enrollment")
        # At most one pending factor per identity
        for factor in self.store.list_mfa_factors(user_id):
            if not factor.is_verified:
                self.store.delete_mfa_factor(factor.id)
        secret = base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")
        try:
            factor = self.store.create_mfa_factor(
                user_id, secret, friendly_name=friendly_name
            )
        except (ConstraintViolation, RuntimeError) as exc:
            logger.error("mfa_enroll_failed", user_id=user_id, error=str(exc))
            raise MfaEnrollmentFailedError("could not create MFA factor") from exc
        logger.info("mfa_factor_enrolled", user_id=user_id, factor_id=factor.id)
        return Enrollment(
            factor_id=factor.id,
            secret=secret,
            qr_payload=self._otpauth_uri(user.email, secret),
        )

    def _otpauth_uri(self, account: str, secret: str) -> str:
        issuer = self.settings.mfa_issuer
        label = quote(f"{issuer}:{account}")
        query = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_INTERVAL,
            }
        )
        return f"otpauth://totp/{label}?{query}"

    async def challenge(self, factor_id: str) -> str:
        if not self.store.get_mfa_factor(factor_id):
            raise InvalidMfaCodeError("unknown MFA factor")
        challenge_id = str(uuid.uuid4())
        expires_at = self._now() + timedelta(
            seconds=self.settings.mfa_challenge_ttl_seconds
        )
        if self.cache:
            await self.cache.set_mfa_challenge(challenge_id, factor_id, expires_at)
        else:
            with self._state_lock:
                self._prune_challenges()
                self._challenges[challenge_id] = (factor_id, expires_at)
        return challenge_id

    def _prune_challenges(self) -> None:
        now = self._now()
        stale = [cid for cid, (_, exp) in self._challenges.items() if exp <= now]
        for cid in stale:
            self._challenges.pop(cid, None)

    async def _consume_challenge(
        self, challenge_id: str
    ) -> Optional[Tuple[str, datetime]]:
        if self.cache:
            return await self.cache.pop_mfa_challenge(challenge_id)
        with self._state_lock:
            return self._challenges.pop(challenge_id, None)

    async def verify(self, factor_id: str, challenge_id: str, code: str) -> bool:
        entry = await self._consume_challenge(challenge_id)
        if entry is None:
            logger.info("mfa_challenge_unknown", factor_id=factor_id)
            return False
        challenged_factor, expires_at = entry
        if challenged_factor != factor_id:
            logger.warning("mfa_challenge_factor_mismatch", factor_id=factor_id)
            return False
        if expires_at <= self._now():
            logger.info("mfa_challenge_expired", factor_id=factor_id)
            return False
        if not is_code_format(code):
            return False
        secret = self.store.get_mfa_factor_secret(factor_id)
        if not secret or not self._verify_totp(secret, code):
            logger.info("mfa_code_rejected", factor_id=factor_id)
            return False
        factor = self.store.get_mfa_factor(factor_id)
        if factor and not factor.is_verified:
            self.store.mark_mfa_factor_verified(factor_id)
            logger.info("mfa_factor_verified", factor_id=factor_id, user_id=factor.user_id)
        return True

    def _verify_totp(self, secret: str, code: str) -> bool:
        now = self._clock()
        # One adjacent step either side for clock skew
        for offset in (-1, 0, 1):
            generated = generate_totp(secret, now + offset * TOTP_INTERVAL)
            if generated and hmac.compare_digest(generated, code):
                return True
        return False

    async def unenroll(self, factor_id: str, *, pending_only: bool = False) -> bool:
        if pending_only:
            factor = self.store.get_mfa_factor(factor_id)
            if factor is None or factor.is_verified:
                return False
        removed = self.store.delete_mfa_factor(factor_id)
        if removed:
            logger.info("mfa_factor_removed", factor_id=factor_id)
        return removed

    async def revoke_all(self, user_id: str) -> int:
        """Delete every factor of ``user_id``; callers authorize before calling."""
        factor_ids = {f.id for f in self.store.list_mfa_factors(user_id)}
        count = self.store.delete_user_mfa_factors(user_id)
        if not self.cache:
            with self._state_lock:
                for cid, (fid, _) in list(self._challenges.items()):
                    if fid in factor_ids:
                        self._challenges.pop(cid, None)
        logger.info("mfa_factors_revoked", user_id=user_id, count=count)
        return count
