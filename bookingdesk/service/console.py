from __future__ import annotations

import threading
from typing import Callable, Dict, Optional

from bookingdesk.logging import get_logger
from bookingdesk.service.bookings import BookingSyncEngine, BookingView
from bookingdesk.service.errors import AuthenticationError, TransportError
from bookingdesk.service.login_flow import LoginFlow, LoginStep

logger = get_logger(__name__)

EngineFactory = Callable[[], BookingSyncEngine]


class ConsoleShell:
    """The authorized console for one login flow.

    Mounting acquires a booking subscription; it is released when the
    shell unmounts or the flow leaves ``authenticated``, whichever comes
    first.
    """

    def __init__(self, flow: LoginFlow, engine_factory: EngineFactory) -> None:
        self.flow = flow
        self._engine_factory = engine_factory
        self.engine: Optional[BookingSyncEngine] = None

    @property
    def mounted(self) -> bool:
        return self.engine is not None

    async def mount(self) -> BookingSyncEngine:
        if self.flow.step != LoginStep.AUTHENTICATED:
            raise AuthenticationError("console requires an authenticated session")
        if self.engine is not None:
            return self.engine
        engine = self._engine_factory()
        self.engine = engine
        self.flow.add_listener(self._on_step)
        try:
            await engine.start()
        except TransportError:
            # Subscription stays up; refetch() recovers the snapshot
            logger.warning("console_mounted_without_snapshot", flow_id=self.flow.id)
        logger.info("console_mounted", flow_id=self.flow.id)
        return engine

    def _on_step(self, old: LoginStep, new: LoginStep) -> None:
        if new != LoginStep.AUTHENTICATED:
            self.unmount()

    def unmount(self) -> None:
        engine, self.engine = self.engine, None
        self.flow.remove_listener(self._on_step)
        if engine is not None:
            engine.stop()
            logger.info("console_unmounted", flow_id=self.flow.id)

    async def view(self) -> BookingView:
        await self.flow.revalidate()
        engine = await self.mount()
        return engine.snapshot()

    async def refetch(self) -> BookingView:
        await self.flow.revalidate()
        engine = await self.mount()
        return await engine.refetch()


class ConsoleManager:
    """One shell per authenticated flow, dropped when the flow signs out."""

    def __init__(self, engine_factory: EngineFactory) -> None:
        self._engine_factory = engine_factory
        self._lock = threading.Lock()
        self._shells: Dict[str, ConsoleShell] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._shells)

    def shell_for(self, flow: LoginFlow) -> ConsoleShell:
        with self._lock:
            shell = self._shells.get(flow.id)
            if shell is not None:
                return shell
            shell = ConsoleShell(flow, self._engine_factory)
            self._shells[flow.id] = shell

        def _forget(old: LoginStep, new: LoginStep) -> None:
            if new == LoginStep.UNAUTHENTICATED:
                with self._lock:
                    self._shells.pop(flow.id, None)
                flow.remove_listener(_forget)

        flow.add_listener(_forget)
        return shell

    def close_all(self) -> None:
        with self._lock:
            shells = list(self._shells.values())
            self._shells.clear()
        for shell in shells:
            shell.unmount()
