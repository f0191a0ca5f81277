"""Tests for cached public site content."""

from datetime import date

import pytest

from bookingdesk.service.errors import NotFoundError, TransportError
from bookingdesk.service.site_data import SiteDataService
from bookingdesk.storage.errors import StoreUnavailable
from bookingdesk.storage.freshness import FreshnessCache


@pytest.fixture
def clock():
    return [0.0]


@pytest.fixture
def site_data(memory_store, clock):
    return SiteDataService(
        memory_store,
        FreshnessCache(300, clock=lambda: clock[0]),
        today=lambda: date(2024, 6, 15),
    )


class UnavailableStore:
    async def query(self, table, **kwargs):
        raise StoreUnavailable("connection refused", backend="fake")


class TestSiteData:
    async def test_active_rows_in_display_order(self, site_data, memory_store):
        memory_store.insert_record(
            "banners", {"id": "b2", "title": "Second", "is_active": True, "display_order": 2}
        )
        memory_store.insert_record(
            "banners", {"id": "b1", "title": "First", "is_active": True, "display_order": 1}
        )
        memory_store.insert_record(
            "banners", {"id": "b0", "title": "Hidden", "is_active": False, "display_order": 0}
        )

        items = await site_data.get("banners")

        assert [row["id"] for row in items] == ["b1", "b2"]
        assert "is_active" not in items[0]
        assert items[0]["title"] == "First"

    async def test_cached_until_ttl_or_force(self, site_data, memory_store, clock):
        memory_store.insert_record(
            "faqs", {"id": "q1", "question": "Luggage?", "is_active": True, "display_order": 1}
        )
        assert len(await site_data.get("faqs")) == 1
        memory_store.insert_record(
            "faqs", {"id": "q2", "question": "Refunds?", "is_active": True, "display_order": 2}
        )

        clock[0] = 299.0
        assert len(await site_data.get("faqs")) == 1
        assert len(await site_data.get("faqs", force=True)) == 2

        memory_store.insert_record(
            "faqs", {"id": "q3", "question": "Pets?", "is_active": True, "display_order": 3}
        )
        clock[0] = 299.0 + 300.0
        assert len(await site_data.get("faqs")) == 3

    async def test_promos_filtered_to_current_window(self, site_data, memory_store):
        memory_store.insert_record(
            "promos",
            {"id": "now", "title": "Now", "is_active": True, "start_date": "2024-06-01", "end_date": "2024-06-30"},
        )
        memory_store.insert_record(
            "promos",
            {"id": "past", "title": "Past", "is_active": True, "start_date": "2024-01-01", "end_date": "2024-02-01"},
        )
        memory_store.insert_record(
            "promos",
            {"id": "open", "title": "Open", "is_active": True, "start_date": None, "end_date": None},
        )

        items = await site_data.get("promos")

        assert {row["id"] for row in items} == {"now", "open"}

    async def test_unknown_resource(self, site_data):
        with pytest.raises(NotFoundError):
            await site_data.get("secrets")

    async def test_store_failure_is_transport_error(self):
        service = SiteDataService(UnavailableStore(), FreshnessCache(300))

        with pytest.raises(TransportError):
            await service.get("videos")

    async def test_refresh_all_and_invalidate(self, site_data, memory_store):
        memory_store.insert_record(
            "testimonials", {"id": "t1", "customer_name": "Ayu", "is_active": True, "display_order": 1}
        )

        payloads = await site_data.refresh_all()

        assert set(payloads) == {"banners", "videos", "promos", "faqs", "testimonials"}
        assert payloads["testimonials"][0]["customer_name"] == "Ayu"
        assert site_data.cache.is_valid("testimonials")
        site_data.invalidate("testimonials")
        assert not site_data.cache.is_valid("testimonials")
