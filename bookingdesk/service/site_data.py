from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from bookingdesk.logging import get_logger
from bookingdesk.service.bookings import RecordStore
from bookingdesk.service.errors import NotFoundError, TransportError
from bookingdesk.storage.errors import StoreUnavailable
from bookingdesk.storage.freshness import FreshnessCache

logger = get_logger(__name__)


@dataclass(frozen=True)
class SiteResource:
    table: str
    columns: Tuple[str, ...]
    order_by: Optional[str] = "display_order"
    date_window: bool = False


SITE_RESOURCES: Dict[str, SiteResource] = {
    "banners": SiteResource(
        "banners",
        ("id", "title", "subtitle", "image_url", "link_url", "button_text", "layout_type", "aspect_ratio"),
    ),
    "videos": SiteResource(
        "videos",
        ("id", "title", "description", "youtube_url", "thumbnail_url", "is_featured", "category"),
    ),
    "promos": SiteResource(
        "promos",
        ("id", "title", "description", "discount_text", "promo_code", "start_date", "end_date"),
        order_by=None,
        date_window=True,
    ),
    "faqs": SiteResource("faqs", ("id", "question", "answer", "category")),
    "testimonials": SiteResource(
        "testimonials",
        ("id", "customer_name", "customer_photo_url", "customer_location", "rating", "testimonial_text", "route_taken"),
    ),
}


def _as_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _in_window(row: Dict[str, Any], today: date) -> bool:
    start = _as_date(row.get("start_date"))
    end = _as_date(row.get("end_date"))
    return (start is None or start <= today) and (end is None or end >= today)


class SiteDataService:
    """Public marketing content, one freshness window per resource."""

    def __init__(
        self,
        store: RecordStore,
        cache: FreshnessCache,
        *,
        today: Callable[[], date] = lambda: datetime.now(timezone.utc).date(),
    ) -> None:
        self.store = store
        self.cache = cache
        self._today = today
        self._payloads: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    async def get(self, name: str, *, force: bool = False) -> List[Dict[str, Any]]:
        resource = SITE_RESOURCES.get(name)
        if resource is None:
            raise NotFoundError(f"unknown site resource: {name}")
        if not force and self.cache.is_valid(name):
            with self._lock:
                cached = self._payloads.get(name)
            if cached is not None:
                return list(cached)
        rows = await self._fetch(resource)
        with self._lock:
            self._payloads[name] = rows
        self.cache.mark(name)
        return list(rows)

    async def _fetch(self, resource: SiteResource) -> List[Dict[str, Any]]:
        try:
            rows = await self.store.query(
                resource.table,
                filters={"is_active": True},
                order_by=resource.order_by,
            )
        except StoreUnavailable as exc:
            logger.error("site_data_fetch_failed", resource=resource.table, error=str(exc))
            raise TransportError(f"{resource.table} unavailable") from exc
        if resource.date_window:
            today = self._today()
            rows = [row for row in rows if _in_window(row, today)]
        return [{col: row.get(col) for col in resource.columns} for row in rows]

    async def refresh_all(self) -> Dict[str, List[Dict[str, Any]]]:
        names = list(SITE_RESOURCES)
        results = await asyncio.gather(*(self.get(name, force=True) for name in names))
        return dict(zip(names, results))

    def invalidate(self, name: Optional[str] = None) -> None:
        self.cache.invalidate(name)
