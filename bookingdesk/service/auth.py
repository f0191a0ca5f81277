from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import FrozenSet, Iterable, List, Optional, Protocol, Tuple, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from bookingdesk.config import Settings
from bookingdesk.logging import get_logger
from bookingdesk.service.errors import (
    AuthenticationError,
    InvalidCredentialsError,
    UnauthorizedError,
    ValidationError,
)
from bookingdesk.storage.models import (
    CONSOLE_ROLES,
    ROLE_ADMIN,
    ROLE_SUPER_ADMIN,
    ActivityLogEntry,
    Identity,
    Session,
)
from bookingdesk.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self, email: str, *, email_confirmed: bool = True, meta: Optional[dict] = None
    ) -> Identity: ...

    def get_user(self, user_id: str) -> Optional[Identity]: ...

    def get_user_by_email(self, email: str) -> Optional[Identity]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def get_roles(self, user_id: str) -> List[str]: ...

    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 12,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Optional[dict] = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def revoke_session(self, session_id: str) -> None: ...

    def revoke_user_sessions(self, user_id: str) -> List[str]: ...

    def require_session_mfa(self, session_id: str) -> None: ...

    def mark_session_verified(self, session_id: str) -> None: ...

    def set_mfa_enabled(self, user_id: str, enabled: bool) -> None: ...

    def record_activity(
        self, user_email: str, action: str, details: Optional[dict] = None
    ) -> ActivityLogEntry: ...


def role_allows(roles: Iterable[str], required: str) -> bool:
    """``super_admin`` satisfies ``admin`` checks; nothing satisfies ``super_admin`` but itself."""
    held = set(roles)
    if required in held:
        return True
    return required == ROLE_ADMIN and ROLE_SUPER_ADMIN in held


@dataclass
class AuthContext:
    user_id: str
    email: str
    roles: FrozenSet[str] = field(default_factory=frozenset)
    session_id: Optional[str] = None

    def has_role(self, required: str) -> bool:
        return role_allows(self.roles, required)

    @property
    def is_super_admin(self) -> bool:
        return ROLE_SUPER_ADMIN in self.roles


class AuthService:
    """Credential checks, role lookups and backend session lifecycle.

    Every privileged operation goes through :meth:`authorize`, which reads
    roles from the store on each call instead of trusting what the caller
    last saw.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[Union[RedisCache, SyncRedisCache]],
        settings: Settings,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.logger = logger
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def verify_credentials(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> AuthContext:
        """Check the pair and open a backend session; roles are resolved separately."""
        if not email or not email.strip() or not password:
            raise ValidationError("email and password are required")
        user = self.store.get_user_by_email(email)
        if not user or not self.verify_password(user.id, password):
            self.logger.info("credentials_rejected")
            raise InvalidCredentialsError("Invalid login credentials")
        session = self.store.create_session(
            user.id,
            ttl_minutes=self.settings.session_ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        if self.cache:
            await self.cache.cache_session(session.id, user.id, session.expires_at)
        self.logger.info("credentials_accepted", user_id=user.id, session_id=session.id)
        return AuthContext(user_id=user.id, email=user.email, session_id=session.id)

    async def get_roles(self, user_id: str) -> FrozenSet[str]:
        return frozenset(r for r in self.store.get_roles(user_id) if r in CONSOLE_ROLES)

    async def sign_out(self, session_id: Optional[str]) -> None:
        if not session_id:
            return
        self.store.revoke_session(session_id)
        if self.cache:
            await self.cache.revoke_session(session_id)
        self.logger.info("session_signed_out", session_id=session_id)

    async def revoke_all_user_sessions(self, user_id: str) -> int:
        revoked = self.store.revoke_user_sessions(user_id)
        if self.cache:
            try:
                await self.cache.revoke_user_sessions(user_id)
            except Exception as exc:
                self.logger.warning(
                    "revoke_user_sessions_cache_clear_failed",
                    user_id=user_id,
                    error=str(exc),
                )
        return len(revoked)

    async def get_current_session(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        session = self.store.get_session(session_id)
        if not session:
            return None
        if session.expires_at <= self._now():
            self.store.revoke_session(session_id)
            return None
        if self.cache and await self.cache.get_session_user(session_id) != session.user_id:
            return None
        return session

    async def require_step_up(self, session_id: str) -> None:
        self.store.require_session_mfa(session_id)

    async def complete_step_up(self, session_id: str) -> None:
        self.store.mark_session_verified(session_id)

    async def authorize(self, session_id: Optional[str], required_role: str) -> AuthContext:
        """Single guard for every privileged entry point.

        Raises:
            AuthenticationError: session missing, expired or still awaiting MFA
            UnauthorizedError: session is live but lacks ``required_role``
        """
        session = await self.get_current_session(session_id)
        if not session:
            raise AuthenticationError("session expired or invalid")
        if session.is_step_up_pending:
            raise AuthenticationError("mfa verification required")
        user = self.store.get_user(session.user_id)
        if not user:
            raise AuthenticationError("session expired or invalid")
        roles = await self.get_roles(user.id)
        if not role_allows(roles, required_role):
            self.logger.warning(
                "authorization_denied",
                user_id=user.id,
                required_role=required_role,
                roles=sorted(roles),
            )
            raise UnauthorizedError(f"{required_role} role required")
        return AuthContext(
            user_id=user.id, email=user.email, roles=roles, session_id=session.id
        )

    async def set_mfa_enabled(self, user_id: str, enabled: bool) -> None:
        self.store.set_mfa_enabled(user_id, enabled)

    async def record_activity(
        self, actor_email: str, action: str, details: Optional[dict] = None
    ) -> None:
        """Fire-and-forget activity log write; failures never reach the caller."""
        try:
            self.store.record_activity(actor_email, action, details)
        except Exception as exc:
            self.logger.warning("activity_log_failed", action=action, error=str(exc))

    def create_identity(
        self, email: str, password: str, *, email_confirmed: bool = True
    ) -> Identity:
        user = self.store.create_user(email, email_confirmed=email_confirmed)
        self.save_password(user.id, password)
        return user

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def save_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)
