from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass
from decimal import InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from bookingdesk.logging import get_logger
from bookingdesk.service.errors import TransportError
from bookingdesk.storage.errors import StoreUnavailable
from bookingdesk.storage.models import Booking, BookingStats, Subscription

logger = get_logger(__name__)

BOOKINGS_TABLE = "bookings"
DISCONNECTED_MESSAGE = "realtime disconnected"
SUBSCRIBE_TIMEOUT_SECONDS = 10.0

RecordCallback = Callable[[Dict[str, Any]], None]
StatusCallback = Callable[[str, Optional[str]], None]


class RecordStore(Protocol):
    async def query(
        self,
        table: str,
        *,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]: ...

    def subscribe(
        self,
        table: str,
        on_insert: RecordCallback,
        on_update: RecordCallback,
        on_delete: RecordCallback,
        on_status: Optional[StatusCallback] = None,
    ) -> Subscription: ...

    def unsubscribe(self, subscription: Subscription) -> None: ...


class BookingNotifier(Protocol):
    def booking_received(self, booking: Booking) -> None: ...

    def realtime_degraded(self, reason: str) -> None: ...


def _parse(record: Mapping[str, Any]) -> Optional[Booking]:
    try:
        return Booking.from_record(record)
    except (ValueError, TypeError, KeyError, InvalidOperation) as exc:
        logger.warning("booking_record_invalid", error=str(exc), record_id=record.get("id"))
        return None


class BookingSnapshotLoader:
    """One-shot bulk read of bookings, newest first."""

    def __init__(self, store: RecordStore, *, table: str = BOOKINGS_TABLE) -> None:
        self.store = store
        self.table = table

    async def load(self, limit: int) -> List[Booking]:
        try:
            rows = await self.store.query(
                self.table, order_by="created_at", descending=True, limit=limit
            )
        except StoreUnavailable as exc:
            raise TransportError("booking snapshot unavailable") from exc
        bookings = []
        for row in rows:
            booking = _parse(row)
            if booking is not None:
                bookings.append(booking)
        return bookings


class BookingEventStream:
    """Owns at most one live subscription to booking change notifications."""

    def __init__(self, store: RecordStore, *, table: str = BOOKINGS_TABLE) -> None:
        self.store = store
        self.table = table
        self._handle: Optional[Subscription] = None

    @property
    def active(self) -> bool:
        return self._handle is not None and self._handle.active

    def acquire(
        self,
        on_insert: RecordCallback,
        on_update: RecordCallback,
        on_delete: RecordCallback,
        on_status: Optional[StatusCallback] = None,
    ) -> Subscription:
        self.release()
        self._handle = self.store.subscribe(
            self.table, on_insert, on_update, on_delete, on_status
        )
        return self._handle

    def release(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.release()


@dataclass
class BookingView:
    bookings: List[Booking]
    stats: BookingStats
    is_loading: bool = False
    degraded: bool = False
    error: Optional[str] = None
    last_loaded_at: Optional[float] = None
    limit: int = 500

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bookings": [b.to_dict() for b in self.bookings],
            "stats": self.stats.to_dict(),
            "is_loading": self.is_loading,
            "degraded": self.degraded,
            "error": self.error,
            "last_loaded_at": self.last_loaded_at,
            "limit": self.limit,
        }


@dataclass
class _BufferedEvent:
    kind: str
    booking: Optional[Booking] = None
    booking_id: Optional[str] = None


class BookingSyncEngine:
    """Mirror of the newest ``limit`` bookings, kept current by change events.

    All mutations of the collection happen under ``_lock``. Store callbacks
    may arrive on any thread, and events that land while a snapshot is in
    flight are applied immediately and replayed on top of the snapshot once
    it replaces the collection. Stats are refolded after every mutation.
    """

    def __init__(
        self,
        loader: BookingSnapshotLoader,
        stream: BookingEventStream,
        *,
        limit: int = 500,
        notifier: Optional[BookingNotifier] = None,
        clock: Callable[[], float] = time.time,
        subscribe_timeout: float = SUBSCRIBE_TIMEOUT_SECONDS,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be positive")
        self.loader = loader
        self.stream = stream
        self.limit = limit
        self.notifier = notifier
        self._clock = clock
        self.subscribe_timeout = subscribe_timeout
        self._lock = threading.RLock()
        self._channel_reported = asyncio.Event()
        self._waiting_loop: Optional[asyncio.AbstractEventLoop] = None
        self._items: List[Booking] = []
        self._stats = BookingStats()
        self._loads_in_flight = 0
        self._buffer: List[_BufferedEvent] = []
        self.last_loaded_at: Optional[float] = None
        self.degraded = False
        self.error: Optional[str] = None
        self.running = False

    # lifecycle
    async def start(self) -> None:
        """Subscribe first, then load, so nothing committed after the read is missed."""
        self._subscribe()
        self.running = True
        await self._await_channel()
        await self.initial_load()

    def stop(self) -> None:
        self.running = False
        self.stream.release()

    async def __aenter__(self) -> "BookingSyncEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def _subscribe(self) -> None:
        self._channel_reported.clear()
        self.stream.acquire(
            self.handle_insert, self.handle_update, self.handle_delete, self.handle_status
        )

    async def _await_channel(self) -> None:
        """Block the snapshot until the channel reports its first status."""
        self._waiting_loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(self._channel_reported.wait(), self.subscribe_timeout)
        except asyncio.TimeoutError:
            self.handle_status("TIMED_OUT", "subscription not confirmed")
        finally:
            self._waiting_loop = None

    def _mark_channel_reported(self) -> None:
        # Store callbacks may fire on another thread than the waiting loop
        loop = self._waiting_loop
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        if loop is not None and current is not loop:
            loop.call_soon_threadsafe(self._channel_reported.set)
        else:
            self._channel_reported.set()

    # reads
    @property
    def bookings(self) -> List[Booking]:
        with self._lock:
            return list(self._items)

    @property
    def stats(self) -> BookingStats:
        with self._lock:
            return self._stats

    @property
    def is_loading(self) -> bool:
        with self._lock:
            return self._loads_in_flight > 0

    def snapshot(self) -> BookingView:
        with self._lock:
            return BookingView(
                bookings=list(self._items),
                stats=self._stats,
                is_loading=self._loads_in_flight > 0,
                degraded=self.degraded,
                error=self.error,
                last_loaded_at=self.last_loaded_at,
                limit=self.limit,
            )

    # loads
    async def initial_load(self, limit: Optional[int] = None) -> BookingView:
        if limit is not None:
            if limit < 1:
                raise ValueError("limit must be positive")
            self.limit = limit
        with self._lock:
            self._loads_in_flight += 1
        try:
            fetched = await self.loader.load(self.limit)
        except TransportError as exc:
            with self._lock:
                self._loads_in_flight -= 1
                if not self._loads_in_flight:
                    self._buffer.clear()
                self.error = exc.message
            logger.error("booking_snapshot_failed", error=exc.message)
            raise
        with self._lock:
            self._loads_in_flight -= 1
            self._replace(fetched)
            replay, self._buffer = self._buffer, []
            if self._loads_in_flight:
                # A newer load is still out; it needs these events too
                self._buffer = list(replay)
            for event in replay:
                self._apply_buffered(event)
            self._recompute()
            self.last_loaded_at = self._clock()
            if not self.degraded:
                self.error = None
            count = len(self._items)
        logger.info("booking_snapshot_loaded", count=count, replayed=len(replay))
        return self.snapshot()

    async def refetch(self) -> BookingView:
        """Manual recovery path: re-acquire a dropped channel, then reload."""
        resubscribed = False
        if self.running and (self.degraded or not self.stream.active):
            self._subscribe()
            resubscribed = True
            await self._await_channel()
        view = await self.initial_load()
        if self.stream.active:
            with self._lock:
                self.degraded = False
                self.error = None
        if resubscribed:
            logger.info("booking_stream_recovered")
        return self.snapshot() if resubscribed else view

    def _replace(self, fetched: List[Booking]) -> None:
        ordered = sorted(fetched, key=lambda b: b.created_at, reverse=True)
        seen = set()
        items = []
        for booking in ordered:
            if booking.id in seen:
                continue
            seen.add(booking.id)
            items.append(booking)
        self._items = items[: self.limit]

    # events
    def handle_insert(self, record: Mapping[str, Any]) -> None:
        booking = _parse(record)
        if booking is None:
            return
        with self._lock:
            if self._loads_in_flight:
                self._buffer.append(_BufferedEvent("insert", booking=booking))
            is_new = self._index(booking.id) is None
            self._apply_insert(booking)
            self._recompute()
        if is_new and self.notifier:
            self.notifier.booking_received(booking)

    def handle_update(self, record: Mapping[str, Any]) -> None:
        booking = _parse(record)
        if booking is None:
            return
        with self._lock:
            if self._loads_in_flight:
                self._buffer.append(_BufferedEvent("update", booking=booking))
            self._apply_update(booking)
            self._recompute()

    def handle_delete(self, record: Mapping[str, Any]) -> None:
        booking_id = record.get("id")
        if not booking_id:
            return
        with self._lock:
            if self._loads_in_flight:
                self._buffer.append(_BufferedEvent("delete", booking_id=str(booking_id)))
            self._apply_delete(str(booking_id))
            self._recompute()

    def handle_status(self, status: str, error: Optional[str] = None) -> None:
        self._mark_channel_reported()
        if status == "SUBSCRIBED":
            logger.info("booking_stream_subscribed")
            return
        with self._lock:
            first_signal = not self.degraded
            self.degraded = True
            self.error = DISCONNECTED_MESSAGE
        logger.warning("booking_stream_degraded", status=status, reason=error)
        if first_signal and self.notifier:
            self.notifier.realtime_degraded(error or status)

    # mutations, caller holds _lock
    def _index(self, booking_id: str) -> Optional[int]:
        for idx, item in enumerate(self._items):
            if item.id == booking_id:
                return idx
        return None

    def _apply_insert(self, booking: Booking, *, guarded: bool = False) -> None:
        if self._index(booking.id) is not None:
            self._apply_update(booking, guarded=guarded)
            return
        position = len(self._items)
        for idx, item in enumerate(self._items):
            if item.created_at <= booking.created_at:
                position = idx
                break
        self._items.insert(position, booking)
        del self._items[self.limit :]

    def _apply_update(self, booking: Booking, *, guarded: bool = False) -> None:
        idx = self._index(booking.id)
        if idx is None:
            logger.debug("booking_update_outside_window", booking_id=booking.id)
            return
        if guarded and self._items[idx].updated_at > booking.updated_at:
            return
        self._items[idx] = booking

    def _apply_delete(self, booking_id: str) -> None:
        idx = self._index(booking_id)
        if idx is not None:
            del self._items[idx]

    def _apply_buffered(self, event: _BufferedEvent) -> None:
        if event.kind == "insert":
            self._apply_insert(event.booking, guarded=True)
        elif event.kind == "update":
            self._apply_update(event.booking, guarded=True)
        elif event.kind == "delete":
            self._apply_delete(event.booking_id)

    def _recompute(self) -> None:
        self._stats = BookingStats.from_bookings(self._items)
