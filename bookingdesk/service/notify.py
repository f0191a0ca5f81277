from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, Optional

import httpx

from bookingdesk.logging import get_logger
from bookingdesk.storage.models import Booking

logger = get_logger(__name__)


class Notifier:
    """Fire-and-forget console alerts.

    Every alert is logged; when a webhook URL is configured it is also
    POSTed from a small worker pool so callers (including store callbacks
    on arbitrary threads) never block on delivery.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        *,
        timeout: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.webhook_url = webhook_url
        self._client: Optional[httpx.Client] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        if webhook_url:
            self._client = httpx.Client(timeout=timeout, transport=transport)
            self._executor = ThreadPoolExecutor(
                max_workers=2, thread_name_prefix="bookingdesk-notify"
            )

    def booking_received(self, booking: Booking) -> None:
        logger.info(
            "booking_received",
            booking_id=booking.id,
            order_id=booking.order_id,
            payment_status=booking.payment_status,
        )
        self._send(
            "booking.created",
            {
                "booking_id": booking.id,
                "order_id": booking.order_id,
                "route_from": booking.route_from,
                "route_to": booking.route_to,
                "travel_date": booking.travel_date,
            },
        )

    def realtime_degraded(self, reason: str) -> None:
        logger.warning("realtime_degraded", reason=reason)
        self._send("realtime.disconnected", {"reason": reason})

    def _send(self, event: str, payload: Dict[str, Any]) -> Optional[Future]:
        if not self._executor or not self._client:
            return None
        return self._executor.submit(self._post, event, payload)

    def _post(self, event: str, payload: Dict[str, Any]) -> None:
        try:
            response = self._client.post(
                self.webhook_url, json={"event": event, "data": payload}
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("notify_webhook_failed", notify_event=event, error=str(exc))

    def close(self) -> None:
        if self._executor:
            self._executor.shutdown(wait=False)
        if self._client:
            self._client.close()
