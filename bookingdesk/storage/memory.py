from __future__ import annotations

import base64
import copy
import hashlib
import json
import os
import secrets
import tempfile
import threading
import uuid
from dataclasses import asdict, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Type, TypeVar

from cryptography.fernet import Fernet, InvalidToken

from bookingdesk.logging import get_logger
from bookingdesk.storage.errors import ConstraintViolation
from bookingdesk.storage.models import (
    CONSOLE_ROLES,
    FACTOR_VERIFIED,
    ActivityLogEntry,
    AdminProfile,
    Identity,
    MFAFactor,
    RoleAssignment,
    Session,
    Subscription,
    utcnow,
)

RecordCallback = Callable[[Dict[str, Any]], None]
StatusCallback = Callable[[str, Optional[str]], None]


class _Subscriber:
    __slots__ = ("handle", "on_insert", "on_update", "on_delete", "on_status")

    def __init__(
        self,
        handle: Subscription,
        on_insert: RecordCallback,
        on_update: RecordCallback,
        on_delete: RecordCallback,
        on_status: Optional[StatusCallback],
    ) -> None:
        self.handle = handle
        self.on_insert = on_insert
        self.on_update = on_update
        self.on_delete = on_delete
        self.on_status = on_status


class MemoryStore:
    """In-process backing store: identities, roles, MFA, sessions and record tables.

    Record tables (``bookings``, site content) behave like a hosted data
    store: writes fan out to realtime subscribers after the data lock is
    released, so subscriber callbacks may take their own locks freely.
    """

    def __init__(
        self,
        *,
        mfa_encryption_key: str | None = None,
        state_path: str | None = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, Identity] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.roles: List[RoleAssignment] = []
        self.admin_profiles: Dict[str, AdminProfile] = {}
        self.sessions: Dict[str, Session] = {}
        self.mfa_factors: Dict[str, MFAFactor] = {}
        self._factor_secrets: Dict[str, str] = {}
        self.activity_logs: List[ActivityLogEntry] = []
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._subscribers: Dict[str, _Subscriber] = {}
        # RLock so helpers can nest acquisitions within one thread
        self._data_lock = threading.RLock()
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)
        self.state_path = Path(state_path) if state_path else None
        if self.state_path:
            self._load_state()

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("MFA_SECRET_KEY")
        if not material:
            self.logger.warning("mfa_secret_key_ephemeral")
            material = secrets.token_urlsafe(64)
        try:
            return Fernet(self._derive_cipher_key(material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize MFA cipher") from exc

    # persistence; sessions are deliberately left out and die with the process
    def _persist_state(self) -> None:
        if not self.state_path:
            return
        with self._data_lock:
            state = {
                "users": [_serialize(u) for u in self.users.values()],
                "credentials": [
                    {
                        "user_id": user_id,
                        "password_hash": creds[0],
                        "password_algo": creds[1],
                    }
                    for user_id, creds in self.credentials.items()
                ],
                "roles": [_serialize(r) for r in self.roles],
                "admin_profiles": [_serialize(p) for p in self.admin_profiles.values()],
                "mfa_factors": [
                    {**_serialize(f), "secret": self._factor_secrets.get(f.id)}
                    for f in self.mfa_factors.values()
                ],
                "activity_logs": [_serialize(e) for e in self.activity_logs],
                "tables": self.tables,
            }
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.state_path.parent), prefix=".state_", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w") as handle:
                    json.dump(state, handle, indent=2, default=str)
                os.replace(tmp_path, self.state_path)
            except OSError as exc:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        with self._data_lock:
            self.users = {
                u["id"]: _deserialize(Identity, u) for u in data.get("users", [])
            }
            self.credentials = {
                entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
                for entry in data.get("credentials", [])
            }
            self.roles = [_deserialize(RoleAssignment, r) for r in data.get("roles", [])]
            self.admin_profiles = {
                p["user_id"]: _deserialize(AdminProfile, p)
                for p in data.get("admin_profiles", [])
            }
            self.mfa_factors = {}
            self._factor_secrets = {}
            for raw in data.get("mfa_factors", []):
                secret = raw.pop("secret", None)
                factor = _deserialize(MFAFactor, raw)
                self.mfa_factors[factor.id] = factor
                if secret:
                    self._factor_secrets[factor.id] = secret
            self.activity_logs = [
                _deserialize(ActivityLogEntry, e) for e in data.get("activity_logs", [])
            ]
            self.tables = data.get("tables", {})
        self.logger.info("memory_state_loaded", users=len(self.users), path=str(self.state_path))
        return True

    # identities
    def create_user(
        self, email: str, *, email_confirmed: bool = True, meta: Optional[Dict] = None
    ) -> Identity:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = Identity(
                id=str(uuid.uuid4()),
                email=normalized,
                email_confirmed=email_confirmed,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user_by_email(self, email: str) -> Optional[Identity]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def get_user(self, user_id: str) -> Optional[Identity]:
        with self._data_lock:
            return self.users.get(user_id)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            self.roles = [r for r in self.roles if r.user_id != user_id]
            self.admin_profiles.pop(user_id, None)
            self.delete_user_mfa_factors(user_id)
            self.revoke_user_sessions(user_id)
            self._persist_state()
            return True

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # roles
    def get_roles(self, user_id: str) -> List[str]:
        with self._data_lock:
            return [r.role for r in self.roles if r.user_id == user_id]

    def add_role(self, user_id: str, role: str) -> RoleAssignment:
        if role not in CONSOLE_ROLES:
            raise ConstraintViolation("unknown role", {"role": role})
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if any(r.user_id == user_id and r.role == role for r in self.roles):
                raise ConstraintViolation(
                    "role already assigned", {"user_id": user_id, "role": role}
                )
            assignment = RoleAssignment(user_id=user_id, role=role)
            self.roles.append(assignment)
            self._persist_state()
            return assignment

    def remove_roles(self, user_id: str) -> int:
        with self._data_lock:
            before = len(self.roles)
            self.roles = [r for r in self.roles if r.user_id != user_id]
            self._persist_state()
            return before - len(self.roles)

    def list_role_assignments(self) -> List[RoleAssignment]:
        with self._data_lock:
            return sorted(self.roles, key=lambda r: r.created_at, reverse=True)

    # admin profiles
    def upsert_admin_profile(
        self,
        user_id: str,
        *,
        phone_number: Optional[str] = None,
        is_mfa_enabled: bool = False,
    ) -> AdminProfile:
        with self._data_lock:
            profile = self.admin_profiles.get(user_id)
            if profile is None:
                profile = AdminProfile(user_id=user_id)
                self.admin_profiles[user_id] = profile
            profile.phone_number = phone_number
            profile.is_mfa_enabled = is_mfa_enabled
            profile.updated_at = utcnow()
            self._persist_state()
            return profile

    def get_admin_profile(self, user_id: str) -> Optional[AdminProfile]:
        with self._data_lock:
            return self.admin_profiles.get(user_id)

    def set_mfa_enabled(self, user_id: str, enabled: bool) -> None:
        with self._data_lock:
            profile = self.admin_profiles.get(user_id)
            if profile is None:
                profile = AdminProfile(user_id=user_id)
                self.admin_profiles[user_id] = profile
            profile.is_mfa_enabled = enabled
            profile.updated_at = utcnow()
            self._persist_state()

    def delete_admin_profile(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.admin_profiles.pop(user_id, None) is not None
            if removed:
                self._persist_state()
            return removed

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 12,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Optional[Dict] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id=user_id,
                ttl_minutes=ttl_minutes,
                user_agent=user_agent,
                ip_addr=ip_addr,
                meta=meta,
            )
            self.sessions[sess.id] = sess
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def revoke_session(self, session_id: str) -> None:
        with self._data_lock:
            self.sessions.pop(session_id, None)

    def revoke_user_sessions(self, user_id: str) -> List[str]:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            return stale

    def require_session_mfa(self, session_id: str) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.mfa_required = True
            sess.mfa_verified = False

    def mark_session_verified(self, session_id: str) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.mfa_verified = True

    # mfa factors
    def _encrypt_mfa_secret(self, secret: str) -> str:
        if not self._mfa_cipher:
            raise RuntimeError("MFA cipher unavailable; secret cannot be stored")
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: str) -> Optional[str]:
        if not self._mfa_cipher:
            raise RuntimeError("MFA cipher unavailable; cannot decrypt secret")
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed")
            return None

    def create_mfa_factor(
        self, user_id: str, secret: str, *, friendly_name: str = "Authenticator"
    ) -> MFAFactor:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            factor = MFAFactor(
                id=str(uuid.uuid4()), user_id=user_id, friendly_name=friendly_name
            )
            self.mfa_factors[factor.id] = factor
            self._factor_secrets[factor.id] = self._encrypt_mfa_secret(secret)
            self._persist_state()
            return factor

    def get_mfa_factor(self, factor_id: str) -> Optional[MFAFactor]:
        with self._data_lock:
            return self.mfa_factors.get(factor_id)

    def get_mfa_factor_secret(self, factor_id: str) -> Optional[str]:
        with self._data_lock:
            encrypted = self._factor_secrets.get(factor_id)
            if not encrypted:
                return None
            return self._decrypt_mfa_secret(encrypted)

    def list_mfa_factors(self, user_id: str) -> List[MFAFactor]:
        with self._data_lock:
            factors = [f for f in self.mfa_factors.values() if f.user_id == user_id]
            return sorted(factors, key=lambda f: f.created_at)

    def mark_mfa_factor_verified(self, factor_id: str) -> Optional[MFAFactor]:
        with self._data_lock:
            factor = self.mfa_factors.get(factor_id)
            if not factor:
                return None
            factor.status = FACTOR_VERIFIED
            factor.verified_at = utcnow()
            self._persist_state()
            return factor

    def delete_mfa_factor(self, factor_id: str) -> bool:
        with self._data_lock:
            self._factor_secrets.pop(factor_id, None)
            removed = self.mfa_factors.pop(factor_id, None) is not None
            if removed:
                self._persist_state()
            return removed

    def delete_user_mfa_factors(self, user_id: str) -> int:
        with self._data_lock:
            doomed = [fid for fid, f in self.mfa_factors.items() if f.user_id == user_id]
            for factor_id in doomed:
                self.delete_mfa_factor(factor_id)
            return len(doomed)

    # activity log
    def record_activity(
        self, user_email: str, action: str, details: Optional[Dict] = None
    ) -> ActivityLogEntry:
        entry = ActivityLogEntry(
            id=str(uuid.uuid4()),
            user_email=user_email,
            action=action,
            details=dict(details or {}),
        )
        with self._data_lock:
            self.activity_logs.append(entry)
            self._persist_state()
        return entry

    def list_activity(self, limit: int = 100) -> List[ActivityLogEntry]:
        with self._data_lock:
            return list(reversed(self.activity_logs))[:limit]

    # record tables and realtime
    def insert_record(self, table: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        now = utcnow().isoformat()
        row = dict(record)
        row.setdefault("id", str(uuid.uuid4()))
        row.setdefault("created_at", now)
        row.setdefault("updated_at", row["created_at"])
        with self._data_lock:
            rows = self.tables.setdefault(table, {})
            if row["id"] in rows:
                raise ConstraintViolation("duplicate record id", {"id": row["id"]})
            rows[row["id"]] = row
            self._persist_state()
            listeners = self._listeners_for(table)
        for sub in listeners:
            sub.on_insert(copy.deepcopy(row))
        return copy.deepcopy(row)

    def update_record(
        self, table: str, record_id: str, changes: Mapping[str, Any]
    ) -> Optional[Dict[str, Any]]:
        with self._data_lock:
            row = self.tables.get(table, {}).get(record_id)
            if row is None:
                return None
            row.update(changes)
            if "updated_at" not in changes:
                row["updated_at"] = utcnow().isoformat()
            snapshot = copy.deepcopy(row)
            self._persist_state()
            listeners = self._listeners_for(table)
        for sub in listeners:
            sub.on_update(copy.deepcopy(snapshot))
        return snapshot

    def delete_record(self, table: str, record_id: str) -> bool:
        with self._data_lock:
            row = self.tables.get(table, {}).pop(record_id, None)
            if row is not None:
                self._persist_state()
            listeners = self._listeners_for(table) if row is not None else []
        for sub in listeners:
            sub.on_delete({"id": record_id})
        return row is not None

    async def query(
        self,
        table: str,
        *,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        with self._data_lock:
            rows = [copy.deepcopy(r) for r in self.tables.get(table, {}).values()]
        if filters:
            rows = [
                r for r in rows if all(r.get(key) == value for key, value in filters.items())
            ]
        if order_by:
            rows.sort(key=lambda r: _sort_key(r.get(order_by)), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return rows

    def subscribe(
        self,
        table: str,
        on_insert: RecordCallback,
        on_update: RecordCallback,
        on_delete: RecordCallback,
        on_status: Optional[StatusCallback] = None,
    ) -> Subscription:
        handle = Subscription(id=str(uuid.uuid4()), table=table, _release=self.unsubscribe)
        with self._data_lock:
            self._subscribers[handle.id] = _Subscriber(
                handle, on_insert, on_update, on_delete, on_status
            )
        self.logger.debug("realtime_subscribed", table=table, subscription_id=handle.id)
        if on_status:
            on_status("SUBSCRIBED", None)
        return handle

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._data_lock:
            removed = self._subscribers.pop(subscription.id, None)
        subscription.active = False
        if removed:
            self.logger.debug(
                "realtime_unsubscribed",
                table=subscription.table,
                subscription_id=subscription.id,
            )

    def subscriber_count(self, table: Optional[str] = None) -> int:
        with self._data_lock:
            return len(self._listeners_for(table) if table else self._subscribers)

    def disconnect_subscribers(
        self, table: str, *, status: str = "CHANNEL_ERROR", reason: str = "channel closed"
    ) -> int:
        """Drop every live channel on ``table`` and report ``status`` to its owner."""
        with self._data_lock:
            dropped = self._listeners_for(table)
            for sub in dropped:
                self._subscribers.pop(sub.handle.id, None)
        for sub in dropped:
            sub.handle.active = False
            if sub.on_status:
                sub.on_status(status, reason)
        return len(dropped)

    def _listeners_for(self, table: str) -> List[_Subscriber]:
        return [s for s in self._subscribers.values() if s.handle.table == table]


_T = TypeVar("_T")


def _serialize(obj: Any) -> Dict[str, Any]:
    data = asdict(obj)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = value.isoformat()
    return data


def _deserialize(cls: Type[_T], data: Dict[str, Any]) -> _T:
    known = {f.name for f in fields(cls)}
    values = {}
    for key, value in data.items():
        if key not in known:
            continue
        if key.endswith("_at") and isinstance(value, str):
            value = datetime.fromisoformat(value)
        values[key] = value
    return cls(**values)


def _sort_key(value: Any) -> tuple:
    if value is None:
        return (0, "")
    if isinstance(value, datetime):
        return (1, value.isoformat())
    if isinstance(value, (int, float)):
        return (1, f"{value:020.6f}")
    return (1, str(value))
