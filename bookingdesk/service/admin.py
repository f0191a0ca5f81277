from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from bookingdesk.config import Settings
from bookingdesk.logging import get_logger
from bookingdesk.service.auth import AuthService
from bookingdesk.service.errors import ConflictError, NotFoundError, ValidationError
from bookingdesk.service.mfa import MFAService
from bookingdesk.storage.errors import ConstraintViolation
from bookingdesk.storage.models import (
    ROLE_ADMIN,
    ROLE_SUPER_ADMIN,
    AdminProfile,
    Identity,
    RoleAssignment,
)

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class AdminStore(Protocol):
    def get_user(self, user_id: str) -> Optional[Identity]: ...

    def get_user_by_email(self, email: str) -> Optional[Identity]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def get_roles(self, user_id: str) -> List[str]: ...

    def add_role(self, user_id: str, role: str) -> RoleAssignment: ...

    def remove_roles(self, user_id: str) -> int: ...

    def list_role_assignments(self) -> List[RoleAssignment]: ...

    def upsert_admin_profile(
        self,
        user_id: str,
        *,
        phone_number: Optional[str] = None,
        is_mfa_enabled: bool = False,
    ) -> AdminProfile: ...

    def get_admin_profile(self, user_id: str) -> Optional[AdminProfile]: ...

    def delete_admin_profile(self, user_id: str) -> bool: ...


@dataclass
class AdminAccount:
    user_id: str
    email: Optional[str]
    role: str
    created_at: datetime
    phone_number: Optional[str] = None
    is_mfa_enabled: bool = False
    email_confirmed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "email": self.email,
            "role": self.role,
            "created_at": self.created_at.isoformat(),
            "phone_number": self.phone_number,
            "is_mfa_enabled": self.is_mfa_enabled,
            "email_confirmed": self.email_confirmed,
        }


class AdminService:
    """Privileged account management.

    Each entry point starts with ``AuthService.authorize`` so the caller's
    role is re-read from the role store on every call.
    """

    def __init__(
        self,
        store: AdminStore,
        auth: AuthService,
        mfa: MFAService,
        settings: Settings,
    ) -> None:
        self.store: AdminStore = store
        self.auth = auth
        self.mfa = mfa
        self.settings = settings

    def _account(self, assignment: RoleAssignment) -> AdminAccount:
        user = self.store.get_user(assignment.user_id)
        profile = self.store.get_admin_profile(assignment.user_id)
        return AdminAccount(
            user_id=assignment.user_id,
            email=user.email if user else None,
            role=assignment.role,
            created_at=assignment.created_at,
            phone_number=profile.phone_number if profile else None,
            is_mfa_enabled=profile.is_mfa_enabled if profile else False,
            email_confirmed=user.email_confirmed if user else False,
        )

    async def list_admins(self, session_id: Optional[str]) -> List[AdminAccount]:
        await self.auth.authorize(session_id, ROLE_ADMIN)
        return [self._account(a) for a in self.store.list_role_assignments()]

    async def create_admin(
        self,
        session_id: Optional[str],
        *,
        email: str,
        password: str,
        role: str = ROLE_ADMIN,
        phone_number: Optional[str] = None,
    ) -> AdminAccount:
        ctx = await self.auth.authorize(session_id, ROLE_SUPER_ADMIN)
        email = (email or "").strip().lower()
        if not _EMAIL_RE.match(email):
            raise ValidationError("invalid email format", detail={"field": "email"})
        if not password or len(password) < self.settings.min_password_length:
            raise ValidationError(
                f"password must be at least {self.settings.min_password_length} characters",
                detail={"field": "password"},
            )
        assigned_role = ROLE_SUPER_ADMIN if role == ROLE_SUPER_ADMIN else ROLE_ADMIN

        created = False
        user = self.store.get_user_by_email(email)
        if user is not None:
            if self.store.get_roles(user.id):
                raise ConflictError("user is already an admin", detail={"field": "email"})
        else:
            try:
                user = self.auth.create_identity(email, password)
            except ConstraintViolation as exc:
                raise ConflictError(exc.message, detail=exc.detail) from exc
            created = True

        try:
            assignment = self.store.add_role(user.id, assigned_role)
        except ConstraintViolation as exc:
            if created:
                # Do not leave an orphaned identity behind
                self.store.delete_user(user.id)
            logger.error("admin_role_assign_failed", user_id=user.id, error=exc.message)
            raise ConflictError("failed to assign admin role", detail=exc.detail) from exc

        self.store.upsert_admin_profile(
            user.id, phone_number=phone_number or None, is_mfa_enabled=False
        )
        await self.auth.record_activity(
            ctx.email,
            "admin_created",
            {"new_admin_email": email, "role": assigned_role, "reused_identity": not created},
        )
        logger.info(
            "admin_created", actor_id=ctx.user_id, user_id=user.id, role=assigned_role
        )
        return self._account(assignment)

    async def delete_admin(
        self, session_id: Optional[str], user_id: str, *, delete_user: bool = False
    ) -> Dict[str, Any]:
        ctx = await self.auth.authorize(session_id, ROLE_SUPER_ADMIN)
        if user_id == ctx.user_id:
            raise ValidationError("cannot delete your own account")
        target = self.store.get_user(user_id)
        if target is None:
            raise NotFoundError("admin not found")
        roles_removed = self.store.remove_roles(user_id)
        self.store.delete_admin_profile(user_id)
        sessions_revoked = await self.auth.revoke_all_user_sessions(user_id)
        if delete_user:
            self.store.delete_user(user_id)
        await self.auth.record_activity(
            ctx.email,
            "admin_removed",
            {
                "removed_admin_id": user_id,
                "removed_admin_email": target.email,
                "user_deleted": delete_user,
            },
        )
        logger.info(
            "admin_removed",
            actor_id=ctx.user_id,
            user_id=user_id,
            roles_removed=roles_removed,
            user_deleted=delete_user,
        )
        return {
            "user_id": user_id,
            "roles_removed": roles_removed,
            "sessions_revoked": sessions_revoked,
            "user_deleted": delete_user,
        }

    async def reset_user_mfa(self, session_id: Optional[str], user_id: str) -> int:
        ctx = await self.auth.authorize(session_id, ROLE_SUPER_ADMIN)
        target = self.store.get_user(user_id)
        if target is None:
            raise NotFoundError("user not found")
        factors_removed = await self.mfa.revoke_all(user_id)
        await self.auth.set_mfa_enabled(user_id, False)
        if user_id != ctx.user_id:
            await self.auth.revoke_all_user_sessions(user_id)
        await self.auth.record_activity(
            ctx.email,
            "mfa_reset",
            {
                "target_user_id": user_id,
                "target_email": target.email,
                "factors_removed": factors_removed,
            },
        )
        logger.info(
            "mfa_reset", actor_id=ctx.user_id, user_id=user_id, factors_removed=factors_removed
        )
        return factors_removed
