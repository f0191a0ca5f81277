"""Tests for the console login state machine.

Covers:
- Credential rejection and role gating
- The three exits after role resolution (verify, enroll, direct)
- Abandon winning over in-flight operations
- Revalidation after role loss
- LoginFlowRegistry indexing and pruning
"""

import asyncio

import pytest

from bookingdesk.service.bookings import (
    BookingEventStream,
    BookingSnapshotLoader,
    BookingSyncEngine,
)
from bookingdesk.service.errors import (
    AuthenticationError,
    InsufficientPrivilegeError,
    InvalidCredentialsError,
    InvalidMfaCodeError,
    InvalidStepError,
    MfaEnrollmentFailedError,
    OperationInProgressError,
    TransportError,
    ValidationError,
)
from bookingdesk.service.console import ConsoleManager
from bookingdesk.service.login_flow import LoginFlowRegistry, LoginStep


def _live_sessions(store, user_id):
    return [s for s in store.sessions.values() if s.user_id == user_id]


class TestCredentialStep:
    async def test_admin_without_factor_is_authenticated(self, flow, make_account, memory_store):
        user = make_account("agent@example.com")

        step = await flow.submit_credentials("agent@example.com", "Password123")

        assert step == LoginStep.AUTHENTICATED
        assert flow.context.user_id == user.id
        assert flow.context.roles == frozenset({"admin"})
        actions = [e.action for e in memory_store.list_activity()]
        assert actions == ["login"]
        assert "timestamp" in memory_store.list_activity()[0].details

    async def test_invalid_credentials_stay_unauthenticated(self, flow, make_account, memory_store):
        make_account("agent@example.com")

        with pytest.raises(InvalidCredentialsError):
            await flow.submit_credentials("agent@example.com", "wrong-password")

        assert flow.step == LoginStep.UNAUTHENTICATED
        assert flow.last_error == "Invalid login credentials"
        assert memory_store.sessions == {}

    async def test_empty_fields_are_rejected_before_any_call(self, flow):
        with pytest.raises(ValidationError):
            await flow.submit_credentials("", "secret")
        with pytest.raises(ValidationError):
            await flow.submit_credentials("agent@example.com", "")
        assert flow.step == LoginStep.UNAUTHENTICATED

    async def test_identity_without_role_is_signed_out(self, flow, make_account, memory_store):
        user = make_account("customer@example.com", role=None)

        with pytest.raises(InsufficientPrivilegeError):
            await flow.submit_credentials("customer@example.com", "Password123")

        assert flow.step == LoginStep.UNAUTHENTICATED
        assert flow.context is None
        assert _live_sessions(memory_store, user.id) == []

    async def test_second_submit_is_invalid_step(self, flow, make_account):
        make_account("agent@example.com")
        await flow.submit_credentials("agent@example.com", "Password123")

        with pytest.raises(InvalidStepError):
            await flow.submit_credentials("agent@example.com", "Password123")


class TestMfaVerify:
    async def test_verified_factor_requires_code(
        self, flow, make_account, verified_factor, totp_now, memory_store
    ):
        user = make_account("lead@example.com")
        factor_id, secret = await verified_factor(user.id)

        step = await flow.submit_credentials("lead@example.com", "Password123")

        assert step == LoginStep.AWAITING_MFA_VERIFY
        assert flow.challenge_factor_id == factor_id
        assert memory_store.get_session(flow.session_id).is_step_up_pending

        step = await flow.verify_mfa(totp_now(secret))

        assert step == LoginStep.AUTHENTICATED
        assert not memory_store.get_session(flow.session_id).is_step_up_pending

    async def test_wrong_code_keeps_step_and_clears_code(self, flow, make_account, verified_factor):
        user = make_account("lead@example.com")
        await verified_factor(user.id)
        await flow.submit_credentials("lead@example.com", "Password123")

        with pytest.raises(InvalidMfaCodeError):
            await flow.verify_mfa("000000")

        assert flow.step == LoginStep.AWAITING_MFA_VERIFY
        assert flow.entered_code is None
        assert flow.last_error == "Invalid verification code"

    async def test_transport_failure_clears_code(
        self, flow, make_account, verified_factor, mfa_service
    ):
        user = make_account("lead@example.com")
        await verified_factor(user.id)
        await flow.submit_credentials("lead@example.com", "Password123")

        async def unreachable_challenge(factor_id):
            raise TransportError("challenge store unavailable")

        mfa_service.challenge = unreachable_challenge

        with pytest.raises(TransportError):
            await flow.verify_mfa("123456")

        assert flow.entered_code is None
        assert flow.in_flight is None
        assert flow.step == LoginStep.AWAITING_MFA_VERIFY

    async def test_malformed_code_is_validation_error(self, flow, make_account, verified_factor):
        user = make_account("lead@example.com")
        await verified_factor(user.id)
        await flow.submit_credentials("lead@example.com", "Password123")

        for code in ("12345", "1234567", "12a456", ""):
            with pytest.raises(ValidationError):
                await flow.verify_mfa(code)
        assert flow.step == LoginStep.AWAITING_MFA_VERIFY

    async def test_pending_session_is_not_authorized(
        self, flow, make_account, verified_factor, auth_service
    ):
        user = make_account("lead@example.com")
        await verified_factor(user.id)
        await flow.submit_credentials("lead@example.com", "Password123")

        with pytest.raises(AuthenticationError):
            await auth_service.authorize(flow.session_id, "admin")

    async def test_verify_outside_mfa_step_is_invalid(self, flow):
        with pytest.raises(InvalidStepError):
            await flow.verify_mfa("123456")
        with pytest.raises(InvalidStepError):
            await flow.verify_enrollment("123456")


class TestForcedEnrollment:
    async def test_super_admin_without_factor_must_enroll(
        self, flow, make_account, totp_now, memory_store, auth_service
    ):
        user = make_account("owner@example.com", role="super_admin")

        step = await flow.submit_credentials("owner@example.com", "Password123")

        assert step == LoginStep.AWAITING_MFA_ENROLL
        assert flow.enrollment.qr_payload.startswith("otpauth://totp/")
        assert "issuer=BookingDesk" in flow.enrollment.qr_payload
        factor = memory_store.get_mfa_factor(flow.enrollment.factor_id)
        assert factor.friendly_name == "Authenticator"
        assert not factor.is_verified

        step = await flow.verify_enrollment(totp_now(flow.enrollment.secret))

        assert step == LoginStep.AUTHENTICATED
        assert flow.enrollment is None
        assert memory_store.get_mfa_factor(factor.id).is_verified
        assert memory_store.get_admin_profile(user.id).is_mfa_enabled
        ctx = await auth_service.authorize(flow.session_id, "super_admin")
        assert ctx.user_id == user.id

    async def test_abandon_enrollment_removes_pending_factor(self, flow, make_account, memory_store):
        user = make_account("owner@example.com", role="super_admin")
        await flow.submit_credentials("owner@example.com", "Password123")
        factor_id = flow.enrollment.factor_id

        step = await flow.abandon()

        assert step == LoginStep.UNAUTHENTICATED
        assert memory_store.get_mfa_factor(factor_id) is None
        assert _live_sessions(memory_store, user.id) == []

    async def test_enrollment_failure_signs_out(self, flow, make_account, mfa_service, memory_store):
        user = make_account("owner@example.com", role="super_admin")

        async def failing_enroll(user_id, **kwargs):
            raise MfaEnrollmentFailedError("could not create MFA factor")

        mfa_service.enroll = failing_enroll

        with pytest.raises(MfaEnrollmentFailedError):
            await flow.submit_credentials("owner@example.com", "Password123")

        assert flow.step == LoginStep.UNAUTHENTICATED
        assert _live_sessions(memory_store, user.id) == []

    async def test_super_admin_with_factor_goes_to_verify(
        self, flow, make_account, verified_factor
    ):
        user = make_account("owner@example.com", role="super_admin")
        await verified_factor(user.id)

        step = await flow.submit_credentials("owner@example.com", "Password123")

        assert step == LoginStep.AWAITING_MFA_VERIFY


class TestAbandon:
    async def test_abandon_wins_over_inflight_credentials(
        self, flow, make_account, auth_service, memory_store
    ):
        user = make_account("agent@example.com")
        entered = asyncio.Event()
        gate = asyncio.Event()
        original_get_roles = auth_service.get_roles

        async def slow_get_roles(user_id):
            entered.set()
            await gate.wait()
            return await original_get_roles(user_id)

        auth_service.get_roles = slow_get_roles

        task = asyncio.create_task(
            flow.submit_credentials("agent@example.com", "Password123")
        )
        await entered.wait()
        assert flow.in_flight == "submit_credentials"

        await flow.abandon()
        assert flow.step == LoginStep.UNAUTHENTICATED
        assert flow.in_flight is None

        gate.set()
        result = await task

        assert result == LoginStep.UNAUTHENTICATED
        assert flow.step == LoginStep.UNAUTHENTICATED
        assert flow.context is None
        # The orphaned backend session is closed by the stale completion
        assert _live_sessions(memory_store, user.id) == []

    async def test_stale_verify_completion_is_dropped(
        self, flow, make_account, verified_factor, totp_now, mfa_service
    ):
        user = make_account("lead@example.com")
        _, secret = await verified_factor(user.id)
        await flow.submit_credentials("lead@example.com", "Password123")
        entered = asyncio.Event()
        gate = asyncio.Event()
        original_challenge = mfa_service.challenge

        async def slow_challenge(factor_id):
            entered.set()
            await gate.wait()
            return await original_challenge(factor_id)

        mfa_service.challenge = slow_challenge

        task = asyncio.create_task(flow.verify_mfa(totp_now(secret)))
        await entered.wait()
        await flow.abandon()
        gate.set()
        result = await task

        assert result == LoginStep.UNAUTHENTICATED
        assert flow.step == LoginStep.UNAUTHENTICATED

    async def test_concurrent_verify_is_rejected(
        self, flow, make_account, verified_factor, totp_now, mfa_service
    ):
        user = make_account("lead@example.com")
        _, secret = await verified_factor(user.id)
        await flow.submit_credentials("lead@example.com", "Password123")
        entered = asyncio.Event()
        gate = asyncio.Event()
        original_challenge = mfa_service.challenge

        async def slow_challenge(factor_id):
            entered.set()
            await gate.wait()
            return await original_challenge(factor_id)

        mfa_service.challenge = slow_challenge

        task = asyncio.create_task(flow.verify_mfa(totp_now(secret)))
        await entered.wait()
        with pytest.raises(OperationInProgressError):
            await flow.verify_mfa("123456")

        gate.set()
        assert await task == LoginStep.AUTHENTICATED

    async def test_abandon_when_idle_is_noop(self, flow):
        assert await flow.abandon() == LoginStep.UNAUTHENTICATED

    async def test_listeners_see_every_transition(self, flow, make_account):
        make_account("agent@example.com")
        seen = []
        flow.add_listener(lambda old, new: seen.append((old, new)))

        await flow.submit_credentials("agent@example.com", "Password123")
        await flow.sign_out()

        assert seen == [
            (LoginStep.UNAUTHENTICATED, LoginStep.CREDENTIALS_SUBMITTED),
            (LoginStep.CREDENTIALS_SUBMITTED, LoginStep.AUTHENTICATED),
            (LoginStep.AUTHENTICATED, LoginStep.UNAUTHENTICATED),
        ]


class TestRevalidate:
    async def test_role_loss_tears_down_session(self, flow, make_account, memory_store):
        user = make_account("agent@example.com")
        await flow.submit_credentials("agent@example.com", "Password123")
        memory_store.remove_roles(user.id)

        with pytest.raises(InsufficientPrivilegeError):
            await flow.revalidate()

        assert flow.step == LoginStep.UNAUTHENTICATED
        assert _live_sessions(memory_store, user.id) == []

    async def test_revoked_session_signs_out(self, flow, make_account, auth_service):
        user = make_account("agent@example.com")
        await flow.submit_credentials("agent@example.com", "Password123")
        await auth_service.revoke_all_user_sessions(user.id)

        with pytest.raises(AuthenticationError):
            await flow.revalidate()
        assert flow.step == LoginStep.UNAUTHENTICATED

    async def test_revalidate_refreshes_roles(self, flow, make_account, memory_store):
        user = make_account("agent@example.com")
        await flow.submit_credentials("agent@example.com", "Password123")
        memory_store.add_role(user.id, "super_admin")

        ctx = await flow.revalidate()

        assert ctx.is_super_admin


class TestRegistry:
    async def test_start_indexes_by_session(self, auth_service, mfa_service, make_account):
        make_account("agent@example.com")
        registry = LoginFlowRegistry(auth_service, mfa_service)

        flow = await registry.start("agent@example.com", "Password123")

        assert registry.get(flow.session_id) is flow
        assert len(registry) == 1
        await flow.sign_out()
        assert len(registry) == 0

    async def test_failed_login_is_not_registered(self, auth_service, mfa_service, make_account):
        make_account("agent@example.com")
        registry = LoginFlowRegistry(auth_service, mfa_service)

        with pytest.raises(InvalidCredentialsError):
            await registry.start("agent@example.com", "nope-nope")
        assert len(registry) == 0

    async def test_prune_abandons_parked_mfa_flows(
        self, auth_service, mfa_service, make_account, memory_store
    ):
        make_account("owner@example.com", role="super_admin")
        make_account("agent@example.com")
        now = [1000.0]
        registry = LoginFlowRegistry(
            auth_service, mfa_service, ttl_minutes=1, clock=lambda: now[0]
        )
        parked = await registry.start("owner@example.com", "Password123")
        active = await registry.start("agent@example.com", "Password123")

        now[0] += 61
        pruned = await registry.prune()

        assert pruned == 1
        assert parked.step == LoginStep.UNAUTHENTICATED
        assert active.step == LoginStep.AUTHENTICATED
        assert registry.get(active.session_id) is active
        assert len(registry) == 1

    async def test_prune_releases_flows_whose_session_is_gone(
        self, auth_service, mfa_service, make_account, memory_store
    ):
        make_account("agent@example.com")
        now = [1000.0]
        registry = LoginFlowRegistry(
            auth_service, mfa_service, ttl_minutes=1, clock=lambda: now[0]
        )
        consoles = ConsoleManager(
            lambda: BookingSyncEngine(
                BookingSnapshotLoader(memory_store), BookingEventStream(memory_store)
            )
        )
        flow = await registry.start("agent@example.com", "Password123")
        await consoles.shell_for(flow).view()
        assert memory_store.subscriber_count("bookings") == 1

        memory_store.revoke_session(flow.session_id)
        now[0] += 61
        pruned = await registry.prune()

        assert pruned == 1
        assert flow.step == LoginStep.UNAUTHENTICATED
        assert len(registry) == 0
        assert len(consoles) == 0
        assert memory_store.subscriber_count("bookings") == 0

    async def test_prune_keeps_live_signed_in_flows(self, auth_service, mfa_service, make_account):
        make_account("agent@example.com")
        now = [1000.0]
        registry = LoginFlowRegistry(
            auth_service, mfa_service, ttl_minutes=1, clock=lambda: now[0]
        )
        flow = await registry.start("agent@example.com", "Password123")

        now[0] += 3600
        assert await registry.prune() == 0
        assert registry.get(flow.session_id) is flow
