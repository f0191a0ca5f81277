from __future__ import annotations

import contextlib
import threading
import time
import uuid
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional

from bookingdesk.logging import get_logger
from bookingdesk.service.auth import AuthContext, AuthService
from bookingdesk.service.errors import (
    AuthenticationError,
    InsufficientPrivilegeError,
    InvalidCredentialsError,
    InvalidMfaCodeError,
    InvalidStepError,
    OperationInProgressError,
    ValidationError,
)
from bookingdesk.service.mfa import Enrollment, MFAService, is_code_format
from bookingdesk.storage.models import ROLE_SUPER_ADMIN, utcnow

logger = get_logger(__name__)


class LoginStep(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    CREDENTIALS_SUBMITTED = "credentials_submitted"
    AWAITING_MFA_VERIFY = "awaiting_mfa_verify"
    AWAITING_MFA_ENROLL = "awaiting_mfa_enroll"
    AUTHENTICATED = "authenticated"


StepListener = Callable[[LoginStep, LoginStep], None]


class _StaleCompletion(Exception):
    """An awaited sub-call resolved after abandon() bumped the epoch."""


class LoginFlow:
    """Console login protocol for one browser session.

    Credentials, then role resolution, then one of three exits: TOTP
    verification for identities with a verified factor, forced enrollment
    for ``super_admin`` without one, or straight to authenticated for a
    plain ``admin``. Only one operation may be in flight at a time;
    :meth:`abandon` bypasses that guard and bumps the epoch so whatever
    was in flight discards its result.
    """

    def __init__(self, auth: AuthService, mfa: MFAService) -> None:
        self.id = str(uuid.uuid4())
        self._auth = auth
        self._mfa = mfa
        self.step = LoginStep.UNAUTHENTICATED
        self.context: Optional[AuthContext] = None
        self.challenge_factor_id: Optional[str] = None
        self.enrollment: Optional[Enrollment] = None
        self.entered_code: Optional[str] = None
        self.last_error: Optional[str] = None
        self.started_at = time.monotonic()
        self._epoch = 0
        self._in_flight: Optional[str] = None
        self._listeners: List[StepListener] = []

    @property
    def session_id(self) -> Optional[str]:
        return self.context.session_id if self.context else None

    @property
    def in_flight(self) -> Optional[str]:
        return self._in_flight

    @property
    def epoch(self) -> int:
        return self._epoch

    def add_listener(self, listener: StepListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StepListener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    def _set_step(self, new_step: LoginStep) -> None:
        old_step = self.step
        self.step = new_step
        if old_step == new_step:
            return
        logger.debug("login_step_changed", flow_id=self.id, old=old_step.value, new=new_step.value)
        for listener in list(self._listeners):
            try:
                listener(old_step, new_step)
            except Exception as exc:
                logger.error(
                    "login_step_listener_failed", flow_id=self.id, error=str(exc)
                )

    def _reset(self) -> None:
        self.context = None
        self.challenge_factor_id = None
        self.enrollment = None
        self.entered_code = None
        self._set_step(LoginStep.UNAUTHENTICATED)

    def _require_step(self, *allowed: LoginStep) -> None:
        if self.step not in allowed:
            raise InvalidStepError(
                f"operation not allowed while {self.step.value}",
                detail={"step": self.step.value},
            )

    @contextlib.contextmanager
    def _operation(self, name: str) -> Iterator[int]:
        if self._in_flight:
            raise OperationInProgressError(
                f"{self._in_flight} still in progress", detail={"operation": name}
            )
        self._in_flight = name
        epoch = self._epoch
        try:
            yield epoch
        finally:
            # abandon() already cleared the flag and may have let a new operation start
            if self._epoch == epoch:
                self._in_flight = None

    def _check(self, epoch: int) -> None:
        if self._epoch != epoch:
            raise _StaleCompletion()

    async def submit_credentials(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> LoginStep:
        if not email or not email.strip() or not password:
            raise ValidationError("email and password are required")
        self._require_step(LoginStep.UNAUTHENTICATED)
        with self._operation("submit_credentials") as epoch:
            self.last_error = None
            self._set_step(LoginStep.CREDENTIALS_SUBMITTED)
            ctx: Optional[AuthContext] = None
            enrollment: Optional[Enrollment] = None
            try:
                ctx = await self._auth.verify_credentials(
                    email, password, user_agent=user_agent, ip_addr=ip_addr
                )
                self._check(epoch)
                roles = await self._auth.get_roles(ctx.user_id)
                self._check(epoch)
                if not roles:
                    logger.warning("login_rejected_no_role", user_id=ctx.user_id)
                    raise InsufficientPrivilegeError(
                        "this account has no console access"
                    )
                ctx.roles = roles
                self.context = ctx

                factors = await self._mfa.list_factors(ctx.user_id)
                self._check(epoch)
                verified = next((f for f in factors if f.is_verified), None)
                if verified is not None:
                    await self._auth.require_step_up(ctx.session_id)
                    self._check(epoch)
                    self.challenge_factor_id = verified.id
                    self._set_step(LoginStep.AWAITING_MFA_VERIFY)
                elif ROLE_SUPER_ADMIN in roles:
                    await self._auth.require_step_up(ctx.session_id)
                    self._check(epoch)
                    enrollment = await self._mfa.enroll(ctx.user_id)
                    self._check(epoch)
                    self.enrollment = enrollment
                    self._set_step(LoginStep.AWAITING_MFA_ENROLL)
                else:
                    await self._enter_authenticated()
                logger.info(
                    "login_credentials_accepted",
                    flow_id=self.id,
                    user_id=ctx.user_id,
                    step=self.step.value,
                )
                return self.step
            except _StaleCompletion:
                logger.info("login_stale_completion_dropped", flow_id=self.id)
                if enrollment is not None:
                    await self._mfa.unenroll(enrollment.factor_id, pending_only=True)
                if ctx is not None:
                    await self._auth.sign_out(ctx.session_id)
                return self.step
            except Exception as exc:
                stale = self._epoch != epoch
                if not stale:
                    self.last_error = getattr(exc, "message", str(exc))
                    self._reset()
                if ctx is not None:
                    # No rejected identity keeps a live backend session
                    await self._auth.sign_out(ctx.session_id)
                if stale:
                    return self.step
                if not isinstance(exc, InvalidCredentialsError):
                    logger.warning(
                        "login_failed",
                        flow_id=self.id,
                        error_code=getattr(exc, "error_code", "server_error"),
                    )
                raise

    async def verify_mfa(self, code: str) -> LoginStep:
        self._require_step(LoginStep.AWAITING_MFA_VERIFY)
        return await self._verify_code("verify_mfa", self.challenge_factor_id, code)

    async def verify_enrollment(self, code: str) -> LoginStep:
        self._require_step(LoginStep.AWAITING_MFA_ENROLL)
        factor_id = self.enrollment.factor_id if self.enrollment else None
        return await self._verify_code("verify_enrollment", factor_id, code)

    async def _verify_code(
        self, operation: str, factor_id: Optional[str], code: str
    ) -> LoginStep:
        if not is_code_format(code):
            self.entered_code = None
            raise ValidationError("code must be exactly 6 digits")
        with self._operation(operation) as epoch:
            self.entered_code = code
            try:
                accepted = False
                if factor_id:
                    try:
                        challenge_id = await self._mfa.challenge(factor_id)
                        self._check(epoch)
                        accepted = await self._mfa.verify(factor_id, challenge_id, code)
                    except InvalidMfaCodeError:
                        accepted = False
                    self._check(epoch)
                if not accepted:
                    self.last_error = "Invalid verification code"
                    raise InvalidMfaCodeError("Invalid verification code")
                if operation == "verify_enrollment":
                    await self._auth.set_mfa_enabled(self.context.user_id, True)
                    self._check(epoch)
                await self._auth.complete_step_up(self.context.session_id)
                self._check(epoch)
                await self._enter_authenticated()
                logger.info(
                    "login_mfa_completed",
                    flow_id=self.id,
                    user_id=self.context.user_id if self.context else None,
                    operation=operation,
                )
                return self.step
            except _StaleCompletion:
                logger.info("login_stale_completion_dropped", flow_id=self.id)
                return self.step
            finally:
                # The code is never kept past the attempt that used it
                if self._epoch == epoch:
                    self.entered_code = None

    async def _enter_authenticated(self) -> None:
        self.challenge_factor_id = None
        self.enrollment = None
        self.entered_code = None
        self.last_error = None
        self._set_step(LoginStep.AUTHENTICATED)
        await self._auth.record_activity(
            self.context.email, "login", {"timestamp": utcnow().isoformat()}
        )

    async def abandon(self, *, reason: str = "abandoned") -> LoginStep:
        """Sign out from any step; wins over whatever operation is in flight."""
        if self.step == LoginStep.UNAUTHENTICATED and not self._in_flight:
            return self.step
        self._epoch += 1
        self._in_flight = None
        ctx, enrollment = self.context, self.enrollment
        self._reset()
        if enrollment is not None:
            await self._mfa.unenroll(enrollment.factor_id, pending_only=True)
        if ctx is not None:
            await self._auth.sign_out(ctx.session_id)
        logger.info("login_flow_closed", flow_id=self.id, reason=reason)
        return self.step

    async def sign_out(self) -> LoginStep:
        return await self.abandon(reason="signed_out")

    async def revalidate(self) -> AuthContext:
        """Re-read session and roles; tear down if either is gone."""
        if self.step != LoginStep.AUTHENTICATED or not self.context:
            raise AuthenticationError("not signed in")
        epoch = self._epoch
        session = await self._auth.get_current_session(self.context.session_id)
        if self._epoch != epoch:
            raise AuthenticationError("not signed in")
        if session is None:
            await self.abandon(reason="session_expired")
            raise AuthenticationError("session expired")
        roles = await self._auth.get_roles(self.context.user_id)
        if self._epoch != epoch:
            raise AuthenticationError("not signed in")
        if not roles:
            await self.abandon(reason="role_revoked")
            raise InsufficientPrivilegeError("console access was revoked")
        self.context.roles = roles
        return self.context


class LoginFlowRegistry:
    """Live login flows indexed by backend session id.

    A flow leaves the registry as soon as it returns to unauthenticated.
    Flows parked in an MFA step longer than the TTL, and signed-in flows
    whose backend session expired or was revoked, are abandoned by
    :meth:`prune`.
    """

    def __init__(
        self,
        auth: AuthService,
        mfa: MFAService,
        *,
        ttl_minutes: int = 15,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._auth = auth
        self._mfa = mfa
        self.ttl_seconds = ttl_minutes * 60
        self._clock = clock
        self._lock = threading.Lock()
        self._flows: Dict[str, LoginFlow] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._flows)

    async def start(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> LoginFlow:
        await self.prune()
        flow = LoginFlow(self._auth, self._mfa)
        flow.started_at = self._clock()
        await flow.submit_credentials(
            email, password, user_agent=user_agent, ip_addr=ip_addr
        )
        session_id = flow.session_id
        if flow.step == LoginStep.UNAUTHENTICATED or not session_id:
            raise AuthenticationError("login was abandoned")
        with self._lock:
            self._flows[session_id] = flow
        flow.add_listener(self._forget_when_signed_out(session_id))
        return flow

    def _forget_when_signed_out(self, session_id: str) -> StepListener:
        def _listener(old: LoginStep, new: LoginStep) -> None:
            if new == LoginStep.UNAUTHENTICATED:
                with self._lock:
                    self._flows.pop(session_id, None)

        return _listener

    def get(self, session_id: Optional[str]) -> Optional[LoginFlow]:
        if not session_id:
            return None
        with self._lock:
            return self._flows.get(session_id)

    async def prune(self) -> int:
        """Abandon parked flows past the TTL and signed-in flows whose session is gone."""
        now = self._clock()
        with self._lock:
            flows = list(self._flows.values())
        pruned = 0
        for flow in flows:
            if flow.step != LoginStep.AUTHENTICATED:
                if now - flow.started_at > self.ttl_seconds:
                    await flow.abandon(reason="expired")
                    pruned += 1
            elif await self._auth.get_current_session(flow.session_id) is None:
                await flow.abandon(reason="session_expired")
                pruned += 1
        return pruned

    async def close_all(self) -> None:
        with self._lock:
            flows = list(self._flows.values())
        for flow in flows:
            await flow.abandon(reason="shutdown")
