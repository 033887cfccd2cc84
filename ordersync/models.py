"""
Domain models for remote (Linnworks) order data.

Provides the single status-code mapping shared by every import path, typed
search filters, and dataclasses that turn raw ``Orders/GetOrdersById``
payloads into values ready for the DuckDB store.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional

from ordersync.exceptions import OrderMappingError

TWO_PLACES = Decimal("0.01")


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class StatusFlags:
    """Local status plus the boolean flags derived from one remote code."""
    status: "OrderStatus"
    is_processed: bool
    is_cancelled: bool
    has_refund: bool


class OrderStatus(str, Enum):
    """Local order status."""
    PENDING = "pending"
    PROCESSED = "processed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @classmethod
    def from_remote_code(cls, code: Optional[int]) -> StatusFlags:
        """
        Map a remote status code to the local status and flags.

        0 -> pending, 1 -> processed, 2 -> cancelled, 3 -> pending,
        4 -> refunded. Unknown codes are treated as pending.
        """
        code = int(code or 0)
        status = _REMOTE_STATUS_MAP.get(code, cls.PENDING)
        return StatusFlags(
            status=status,
            is_processed=code in (1, 2, 4),
            is_cancelled=code == 2,
            has_refund=code == 4,
        )


_REMOTE_STATUS_MAP = {
    0: OrderStatus.PENDING,
    1: OrderStatus.PROCESSED,
    2: OrderStatus.CANCELLED,
    3: OrderStatus.PENDING,
    4: OrderStatus.REFUNDED,
}


class DateField(str, Enum):
    """Date column the processed-order search filters on."""
    RECEIVED = "received"
    PROCESSED = "processed"
    PAYMENT = "payment"
    CANCELLED = "cancelled"

    @property
    def label(self) -> str:
        return f"{self.value.capitalize()} Date"


class ImportSource(str, Enum):
    """Which discovery path produced the orders being imported."""
    OPEN = "open"
    PROCESSED = "processed"


class SyncType(str, Enum):
    """Values of ``sync_logs.sync_type``."""
    OPEN_ORDERS = "open_orders"
    PROCESSED_ORDERS = "processed_orders"
    HISTORICAL_ORDERS = "historical_orders"
    ORDER_UPDATES = "order_updates"


# ═══════════════════════════════════════════════════════════════════════════════
# FILTERS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ProcessedOrderFilters:
    """Filters for ``ProcessedOrders/SearchProcessedOrders``."""
    date_field: DateField = DateField.RECEIVED
    search_term: Optional[str] = None

    @classmethod
    def for_historical_import(cls) -> "ProcessedOrderFilters":
        return cls(date_field=DateField.PROCESSED)

    @classmethod
    def for_recent_sync(cls, date_field: Any = DateField.RECEIVED) -> "ProcessedOrderFilters":
        return cls(date_field=DateField(date_field))

    def to_request(self, from_date: datetime, to_date: datetime, page: int, page_size: int) -> Dict[str, Any]:
        """Request body for one page of the search."""
        request = {
            "FromDate": to_api_datetime(from_date),
            "ToDate": to_api_datetime(to_date),
            "DateField": self.date_field.value,
            "PageNumber": page,
            "ResultsPerPage": page_size,
        }
        if self.search_term:
            request["SearchTerm"] = self.search_term
        return {"request": request}


@dataclass
class ProcessedOrdersPage:
    """One page of processed-order search results, ids only."""
    page: int
    order_ids: List[str]
    total_entries: Optional[int] = None
    total_pages: Optional[int] = None
    row_count: int = 0

    @classmethod
    def from_api(cls, data: Dict[str, Any], page: int) -> "ProcessedOrdersPage":
        body = data.get("ProcessedOrders") or {}
        rows = body.get("Data") or []
        order_ids = []
        for row in rows:
            order_id = row.get("pkOrderID") or row.get("OrderId")
            if order_id:
                order_ids.append(str(order_id))
        return cls(
            page=page,
            order_ids=order_ids,
            total_entries=_optional_int(body.get("TotalEntries")),
            total_pages=_optional_int(body.get("TotalPages")),
            row_count=len(rows),
        )


# ═══════════════════════════════════════════════════════════════════════════════
# PARSING HELPERS
# ═══════════════════════════════════════════════════════════════════════════════

def to_api_datetime(value: datetime) -> str:
    """ISO-8601 UTC with a trailing Z, as the remote API expects."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="seconds") + "Z"


def parse_remote_datetime(value: Any) -> Optional[datetime]:
    """
    Parse a remote timestamp into naive UTC.

    Empty values and the remote "no date" placeholders (anything in or
    before 1970) become None. Unparseable strings raise ValueError.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    if parsed.year <= 1970:
        return None
    return parsed


def to_money(value: Any) -> Decimal:
    """Decimal with two places; None and empty strings become 0.00."""
    if value is None or value == "":
        return Decimal("0.00")
    if isinstance(value, bool):
        raise ValueError(f"invalid amount {value!r}")
    try:
        return Decimal(str(value)).quantize(TWO_PLACES)
    except InvalidOperation:
        raise ValueError(f"invalid amount {value!r}")


def normalize_channel(name: Optional[str]) -> Optional[str]:
    """'Amazon UK' -> 'amazon_uk'."""
    if not name:
        return None
    return name.strip().replace(" ", "_").lower()


def parent_sku_for(sku: Optional[str]) -> Optional[str]:
    """Variation SKUs carry their parent before the last dash: '005-001' -> '005'."""
    if not sku or "-" not in sku:
        return None
    parent = sku.rsplit("-", 1)[0]
    return parent or None


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


# ═══════════════════════════════════════════════════════════════════════════════
# REMOTE ORDER
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class RemoteOrderItem:
    """Line item within a remote order."""
    remote_item_id: Optional[str]
    sku: Optional[str]
    title: str
    quantity: int
    unit_cost: Decimal
    price_per_unit: Decimal
    line_total: Decimal
    category_name: Optional[str] = None
    parent_sku: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "RemoteOrderItem":
        sku = data.get("SKU") or data.get("ItemNumber")
        quantity = int(data.get("Quantity") or 0)
        price_per_unit = to_money(data.get("PricePerUnit"))
        line_total = to_money(data.get("Cost") if data.get("Cost") is not None else data.get("LineTotal"))
        if not line_total:
            line_total = (price_per_unit * quantity).quantize(TWO_PLACES)

        item_id = data.get("ItemId") or data.get("StockItemId")
        return cls(
            remote_item_id=str(item_id) if item_id else None,
            sku=sku,
            title=data.get("Title") or data.get("ItemTitle") or sku or "Unknown Item",
            quantity=quantity,
            unit_cost=to_money(data.get("UnitCost")),
            price_per_unit=price_per_unit,
            line_total=line_total,
            category_name=data.get("CategoryName"),
            parent_sku=data.get("ParentSKU") or parent_sku_for(sku),
        )


@dataclass
class RemoteOrder:
    """Fully detailed remote order, validated and normalized."""
    external_id: str
    order_number: Optional[int]
    channel: Optional[str]
    subsource: Optional[str]
    currency: str
    total_charge: Decimal
    postage_cost: Decimal
    tax: Decimal
    profit_margin: Decimal
    status_code: int
    received_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    items: List[RemoteOrderItem] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "RemoteOrder":
        """
        Create RemoteOrder from a ``GetOrdersById`` payload.

        Raises:
            OrderMappingError: missing external id, or a number/date field
                that can't be parsed
        """
        if not isinstance(data, dict):
            raise OrderMappingError(f"order payload is {type(data).__name__}, expected object")

        external_id = data.get("OrderId") or data.get("pkOrderID")
        raw_number = data.get("NumOrderId", data.get("nOrderId"))
        if not external_id:
            raise OrderMappingError("order payload has no OrderId", order_number=raw_number)
        external_id = str(external_id)

        general = data.get("GeneralInfo") or {}
        totals = data.get("TotalsInfo") or {}

        try:
            order_number = _optional_int(raw_number)
            return cls(
                external_id=external_id,
                order_number=order_number,
                channel=general.get("Source") or data.get("Source"),
                subsource=general.get("SubSource") or data.get("SubSource"),
                currency=totals.get("Currency") or data.get("cCurrency") or "GBP",
                total_charge=to_money(totals.get("TotalCharge")),
                postage_cost=to_money(totals.get("PostageCost")),
                tax=to_money(totals.get("Tax")),
                profit_margin=to_money(totals.get("ProfitMargin")),
                status_code=int(general.get("Status") or 0),
                received_at=parse_remote_datetime(general.get("ReceivedDate") or data.get("dReceivedDate")),
                processed_at=parse_remote_datetime(data.get("ProcessedDateTime") or data.get("dProcessedOn")),
                paid_at=parse_remote_datetime(data.get("PaidDateTime")),
                items=[RemoteOrderItem.from_api(item) for item in (data.get("Items") or [])],
            )
        except (TypeError, ValueError) as e:
            raise OrderMappingError(f"invalid field value: {e}", external_id, raw_number) from e

    @property
    def status(self) -> StatusFlags:
        return OrderStatus.from_remote_code(self.status_code)

    @property
    def channel_normalized(self) -> Optional[str]:
        return normalize_channel(self.channel)


# ═══════════════════════════════════════════════════════════════════════════════
# RESULTS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class ImportResult:
    """Per-batch import accounting."""
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0

    def __add__(self, other: "ImportResult") -> "ImportResult":
        return ImportResult(
            processed=self.processed + other.processed,
            created=self.created + other.created,
            updated=self.updated + other.updated,
            skipped=self.skipped + other.skipped,
            failed=self.failed + other.failed,
        )

    @property
    def changed(self) -> int:
        return self.created + self.updated

    def to_dict(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
        }
