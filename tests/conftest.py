"""
Pytest configuration and shared fixtures.
"""
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from ordersync.config import GatewayConfig, SyncConfig
from ordersync.events import EventBus
from ordersync.models import ProcessedOrdersPage
from ordersync.store import OrderStore

NOW = datetime(2026, 3, 15, 12, 0, 0)


def make_order(
    order_id: str,
    number: int = 1000,
    status: int = 1,
    total: str = "25.00",
    items: Optional[List[Dict[str, Any]]] = None,
    **overrides,
) -> Dict[str, Any]:
    """Build an ``Orders/GetOrdersById`` payload."""
    payload = {
        "OrderId": order_id,
        "NumOrderId": number,
        "GeneralInfo": {
            "Source": "Amazon UK",
            "SubSource": "Seller Central",
            "Status": status,
            "ReceivedDate": "2026-03-10T09:30:00Z",
        },
        "TotalsInfo": {
            "Currency": "GBP",
            "TotalCharge": total,
            "PostageCost": "3.99",
            "Tax": "4.17",
            "ProfitMargin": "8.50",
        },
        "ProcessedDateTime": "2026-03-11T14:00:00Z",
        "PaidDateTime": "2026-03-10T09:31:00Z",
        "Items": items if items is not None else [
            {
                "ItemId": f"{order_id}-item-1",
                "SKU": "005-001",
                "Title": "Blue Mug",
                "Quantity": 2,
                "PricePerUnit": "10.50",
                "UnitCost": "4.00",
                "CategoryName": "Kitchen",
            }
        ],
    }
    payload.update(overrides)
    return payload


class FakeClock:
    """Settable clock shared by the code under test."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingSleep:
    """Async sleep stand-in that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeGateway:
    """
    Scripted remote order API.

    ``processed_ids`` are paged by the requested page size; ``failures`` maps
    the 1-based number of a ``fetch_order_details`` call to the error it raises.
    """

    def __init__(
        self,
        orders: Optional[Dict[str, Dict[str, Any]]] = None,
        open_ids: Optional[List[str]] = None,
        processed_ids: Optional[List[str]] = None,
        configured: bool = True,
    ):
        self.orders = dict(orders or {})
        self.open_ids = list(open_ids or [])
        self.processed_ids = list(processed_ids or [])
        self.failures: Dict[int, Exception] = {}
        self.config = GatewayConfig(
            application_id="app" if configured else "",
            application_secret="secret" if configured else "",
            installation_token="token" if configured else "",
        )
        self.search_calls: List[Dict[str, Any]] = []
        self.detail_calls: List[List[str]] = []

    @property
    def is_configured(self) -> bool:
        return self.config.is_configured

    async def list_open_order_ids(self) -> List[str]:
        return list(self.open_ids)

    async def search_processed_orders(self, from_date, to_date, filters=None, page=1, page_size=200):
        self.search_calls.append(
            {"from": from_date, "to": to_date, "filters": filters, "page": page, "page_size": page_size}
        )
        total = len(self.processed_ids)
        chunk = self.processed_ids[(page - 1) * page_size: page * page_size]
        return ProcessedOrdersPage(
            page=page,
            order_ids=chunk,
            total_entries=total,
            total_pages=math.ceil(total / page_size),
            row_count=len(chunk),
        )

    async def fetch_order_details(self, order_ids: List[str]) -> List[Dict[str, Any]]:
        self.detail_calls.append(list(order_ids))
        error = self.failures.get(len(self.detail_calls))
        if error is not None:
            raise error
        return [self.orders[i] for i in order_ids if i in self.orders]

    async def close(self) -> None:
        pass


@pytest_asyncio.fixture
async def store():
    """Fresh in-memory DuckDB store."""
    store = OrderStore(":memory:")
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def sync_config() -> SyncConfig:
    """Sync settings with no fan-out stagger and a small open-order cap."""
    return SyncConfig(
        batch_size=200,
        fanout_stagger_seconds=0.0,
        max_open_orders=1000,
        default_date_field="received",
        incremental_interval_minutes=15,
    )


@pytest.fixture
def sample_order() -> Dict[str, Any]:
    return make_order("ord-1", number=1001)


@pytest.fixture
def sample_orders() -> List[Dict[str, Any]]:
    return [make_order(f"ord-{n}", number=1000 + n) for n in range(1, 11)]
