from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlmodel import Field, SQLModel

from .errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    preparing = "preparing"
    ready = "ready"
    served = "served"
    paid = "paid"
    cancelled = "cancelled"


# Orders in these states keep their table occupied
ACTIVE_STATUSES = frozenset({
    OrderStatus.pending,
    OrderStatus.confirmed,
    OrderStatus.preparing,
    OrderStatus.ready,
    OrderStatus.served,
})
TERMINAL_STATUSES = frozenset({OrderStatus.paid, OrderStatus.cancelled})

# Allowed targets per current status. Ordering between active states is up to
# the caller; a terminal order only accepts a replay of its own status.
STATUS_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    **{status: frozenset(OrderStatus) for status in ACTIVE_STATUSES},
    OrderStatus.paid: frozenset({OrderStatus.paid}),
    OrderStatus.cancelled: frozenset({OrderStatus.cancelled}),
}


def parse_status(value: str | OrderStatus) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown order status: {value}", reason="unknown_status")


class TableStatus(str, Enum):
    available = "available"
    occupied = "occupied"


class PaymentStatus(str, Enum):
    pending = "pending"
    paid = "paid"


class SalesChannel(str, Enum):
    table = "table"  # Dine-in, bound to a table
    pos = "pos"  # Direct sale at the counter


class Product(SQLModel, table=True):
    __tablename__ = "products"

    id: int | None = Field(default=None, primary_key=True)
    name: str
    sku: str | None = Field(default=None, index=True)
    price: Decimal = Field(default=0, max_digits=12, decimal_places=2)  # Pre-tax unit price
    after_tax_price: Decimal | None = Field(default=None, max_digits=12, decimal_places=2)  # None = untaxed
    stock: int = Field(default=0)
    track_inventory: bool = Field(default=False)  # Deduct stock on sale
    is_active: bool = Field(default=True, index=True)


class Table(SQLModel, table=True):
    __tablename__ = "tables"

    id: int | None = Field(default=None, primary_key=True)
    table_number: str = Field(index=True)
    capacity: int = Field(default=4)
    status: TableStatus = Field(default=TableStatus.available, index=True)
    updated_at: datetime = Field(default_factory=utcnow)


class Order(SQLModel, table=True):
    __tablename__ = "orders"

    id: int | None = Field(default=None, primary_key=True)
    order_number: str = Field(unique=True, index=True)
    table_id: int | None = Field(default=None, foreign_key="tables.id", index=True)  # None for direct sales
    status: OrderStatus = Field(default=OrderStatus.pending, index=True)
    customer_name: str | None = None
    customer_count: int = Field(default=1)

    # Money
    subtotal: Decimal = Field(default=0, max_digits=12, decimal_places=2)
    tax: Decimal = Field(default=0, max_digits=12, decimal_places=2)
    discount: Decimal = Field(default=0, max_digits=12, decimal_places=2)
    total: Decimal = Field(default=0, max_digits=12, decimal_places=2)

    # Payment tracking
    payment_method: str | None = None  # 'cash', 'card', 'transfer', etc.
    amount_received: Decimal | None = Field(default=None, max_digits=12, decimal_places=2)  # Cash tendered
    change: Decimal | None = Field(default=None, max_digits=12, decimal_places=2)  # Cash handed back
    payment_status: PaymentStatus = Field(default=PaymentStatus.pending)
    sales_channel: SalesChannel = Field(default=SalesChannel.pos, index=True)

    notes: str | None = None
    ordered_at: datetime = Field(default_factory=utcnow)
    paid_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utcnow)


class OrderItem(SQLModel, table=True):
    __tablename__ = "order_items"

    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="orders.id", index=True)
    product_id: int = Field(foreign_key="products.id")
    quantity: int
    unit_price: Decimal = Field(max_digits=12, decimal_places=2)  # Always the pre-tax price
    discount: Decimal = Field(default=0, max_digits=12, decimal_places=2)  # Share of the order discount
    total: Decimal = Field(default=0, max_digits=12, decimal_places=2)  # unit_price * quantity
    notes: str | None = None  # Item-specific notes (e.g., "no onions")


# Order references
@dataclass(frozen=True)
class PersistedOrder:
    id: int


@dataclass(frozen=True)
class PendingOrder:
    """Client-generated identifier for an order the server has not stored yet."""
    client_token: str


OrderRef = PersistedOrder | PendingOrder

PLACEHOLDER_PREFIX = "temp-"


def parse_order_ref(raw: str | int) -> OrderRef:
    if isinstance(raw, int):
        return PersistedOrder(raw)
    raw = raw.strip()
    if raw.startswith(PLACEHOLDER_PREFIX):
        return PendingOrder(raw)
    try:
        order_id = int(raw)
    except ValueError:
        raise ValidationError(f"Invalid order reference: {raw}", reason="invalid_order_ref")
    if order_id <= 0:
        raise ValidationError(f"Invalid order reference: {raw}", reason="invalid_order_ref")
    return PersistedOrder(order_id)


# Request/Response Models
class OrderItemInput(SQLModel):
    product_id: int
    quantity: int = Field(gt=0)
    unit_price: Decimal | None = Field(default=None, ge=0, max_digits=12, decimal_places=2)  # Defaults to the product's price
    notes: str | None = None


class OrderDraft(SQLModel):
    table_id: int | None = None
    customer_name: str | None = None
    customer_count: int = Field(default=1, ge=0)
    discount: Decimal = Field(default=0, ge=0, max_digits=12, decimal_places=2)
    order_number: str | None = None
    sales_channel: SalesChannel | None = None
    payment_method: str | None = None
    notes: str | None = None
    # Figures asserted by the caller are stored as given
    subtotal: Decimal | None = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    tax: Decimal | None = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    total: Decimal | None = Field(default=None, ge=0, max_digits=12, decimal_places=2)


class OrderCreate(SQLModel):
    order: OrderDraft = Field(default_factory=OrderDraft)
    items: list[OrderItemInput] = []


class OrderItemsAdd(SQLModel):
    items: list[OrderItemInput]


class OrderStatusUpdate(SQLModel):
    status: str
    payment_method: str | None = None


class OrderPayment(SQLModel):
    payment_method: str = "cash"
    amount_received: Decimal | None = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    change: Decimal | None = Field(default=None, ge=0, max_digits=12, decimal_places=2)


class OrderDiscountUpdate(SQLModel):
    discount: Decimal = Field(ge=0, max_digits=12, decimal_places=2)


class OrderItemUpdate(SQLModel):
    quantity: int | None = Field(default=None, gt=0)
    unit_price: Decimal | None = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    discount: Decimal | None = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    notes: str | None = None


class QuoteRequest(SQLModel):
    items: list[OrderItemInput]
    discount: Decimal = Field(default=0, ge=0, max_digits=12, decimal_places=2)


class OrderItemRead(SQLModel):
    id: int
    order_id: int
    product_id: int
    quantity: int
    unit_price: Decimal
    discount: Decimal
    total: Decimal
    notes: str | None = None


class OrderRead(SQLModel):
    id: int
    order_number: str
    table_id: int | None = None
    status: OrderStatus
    customer_name: str | None = None
    customer_count: int
    subtotal: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal
    payment_method: str | None = None
    amount_received: Decimal | None = None
    change: Decimal | None = None
    payment_status: PaymentStatus
    sales_channel: SalesChannel
    notes: str | None = None
    ordered_at: datetime
    paid_at: datetime | None = None
    updated_at: datetime


class StockWarning(SQLModel):
    product_id: int
    product_name: str
    required: int
    available: int
    detail: str


class OrderDetail(OrderRead):
    items: list[OrderItemRead] = []
    warnings: list[StockWarning] = []


class AddItemsResult(SQLModel):
    order: OrderRead
    items: list[OrderItemRead]  # Newly inserted rows only
    warnings: list[StockWarning] = []


class PlaceholderAck(SQLModel):
    """Synthesized success for a mutation addressed to a not-yet-persisted order."""
    id: str
    status: str | None = None
    temporary: bool = True
    updated: bool = True


class TableRead(SQLModel):
    id: int
    table_number: str
    capacity: int
    status: TableStatus
    updated_at: datetime


class QuoteLine(SQLModel):
    product_id: int
    quantity: int
    unit_price: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal


class PricingQuote(SQLModel):
    subtotal: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal
    items: list[QuoteLine]


class TenantRead(SQLModel):
    subdomain: str
    store_name: str
    is_active: bool
    connected: bool = False  # A pool is currently cached for this tenant
