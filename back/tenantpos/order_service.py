"""
Order Lifecycle Service

Business logic for orders of one tenant:
- Order creation with canonical pricing and stock deduction
- Item additions with repricing over all items of the order
- Status transitions, including releasing the table once no active order remains
- Discount edits and explicit recalculation
- Single item edits (which leave the order totals untouched until recalculated)

Mutations of one order are serialized within the process by `OrderLocks`.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from uuid import uuid4
from weakref import WeakValueDictionary

from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from .errors import InsufficientStock, NotFound, OrderClosed, ValidationError
from .models import (
    ACTIVE_STATUSES,
    STATUS_TRANSITIONS,
    TERMINAL_STATUSES,
    AddItemsResult,
    Order,
    OrderDetail,
    OrderDraft,
    OrderItem,
    OrderItemInput,
    OrderItemRead,
    OrderItemUpdate,
    OrderRead,
    OrderRef,
    OrderStatus,
    PaymentStatus,
    PendingOrder,
    PlaceholderAck,
    PricingQuote,
    Product,
    QuoteLine,
    SalesChannel,
    StockWarning,
    Table,
    TableStatus,
    parse_status,
)
from .notifications import OrderEventPublisher
from .pricing import LineItem, as_money, compute_totals

logger = logging.getLogger(__name__)


class OrderLocks:
    """One asyncio.Lock per (tenant, order id), dropped once nobody holds a reference."""

    def __init__(self):
        self._locks: WeakValueDictionary[tuple[str, int], asyncio.Lock] = WeakValueDictionary()

    def lock_for(self, tenant: str, order_id: int) -> asyncio.Lock:
        key = (tenant, order_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


def generate_order_number() -> str:
    """ORD-<epoch ms>-<suffix>; the suffix keeps orders created in the same millisecond apart."""
    return f"ORD-{int(time.time() * 1000)}-{uuid4().hex[:6].upper()}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def to_order_read(order: Order) -> OrderRead:
    return OrderRead.model_validate(order)


def to_order_detail(
    order: Order,
    items: list[OrderItem],
    warnings: list[StockWarning] | None = None,
) -> OrderDetail:
    return OrderDetail(
        **to_order_read(order).model_dump(),
        items=[OrderItemRead.model_validate(item) for item in items],
        warnings=warnings or [],
    )


class OrderLifecycleManager:
    def __init__(
        self,
        session: AsyncSession,
        tenant: str = "default",
        locks: OrderLocks | None = None,
        publisher: OrderEventPublisher | None = None,
    ):
        self.session = session
        self.tenant = tenant
        self.locks = locks or OrderLocks()
        self.publisher = publisher

    # Loading helpers

    async def _get_order(self, order_id: int) -> Order:
        order = await self.session.get(Order, order_id)
        if order is None:
            raise NotFound("Order", order_id)
        return order

    async def _load_items(self, order_id: int) -> list[OrderItem]:
        # Ascending id is the canonical order for discount distribution
        statement = (
            select(OrderItem)
            .where(OrderItem.order_id == order_id)
            .order_by(OrderItem.id.asc())
        )
        return list((await self.session.exec(statement)).all())

    async def _load_products(self, product_ids, strict: bool = True) -> dict[int, Product]:
        ids = set(product_ids)
        if not ids:
            return {}
        result = await self.session.exec(select(Product).where(Product.id.in_(ids)))
        products = {product.id: product for product in result.all()}
        if strict:
            for product_id in sorted(ids):
                if product_id not in products:
                    raise NotFound("Product", product_id)
        return products

    def _ensure_open(self, order: Order) -> None:
        if order.status in TERMINAL_STATUSES:
            raise OrderClosed(order.id, order.status.value)

    def _lock(self, order_id: int) -> asyncio.Lock:
        return self.locks.lock_for(self.tenant, order_id)

    # Pricing helpers

    @staticmethod
    def _line(product: Product | None, product_id: int, quantity: int, unit_price) -> LineItem:
        return LineItem(
            product_id=product_id,
            quantity=quantity,
            unit_price=as_money(unit_price),
            after_tax_price=product.after_tax_price if product is not None else None,
        )

    async def _reprice(self, order: Order, items: list[OrderItem]) -> None:
        """Recompute order figures over all `items` and redistribute the active discount."""
        products = await self._load_products((item.product_id for item in items), strict=False)
        lines = [
            self._line(products.get(item.product_id), item.product_id, item.quantity, item.unit_price)
            for item in items
        ]
        pricing = compute_totals(lines, order.discount)

        order.subtotal = pricing.subtotal
        order.tax = pricing.tax
        order.total = pricing.total
        for item, allocation in zip(items, pricing.item_discounts):
            item.discount = allocation
            self.session.add(item)

        if pricing.discount > 0:
            logger.info(
                f"Distributed discount {pricing.discount} over {len(items)} item(s) of order {order.id}"
            )

    def _deduct_stock(self, product: Product, quantity: int) -> StockWarning | None:
        """Deduct stock for a sale. A shortfall is reported, never blocking the sale."""
        if not product.track_inventory:
            return None
        warning = None
        if product.stock < quantity:
            shortage = InsufficientStock(product.id, product.name, quantity, product.stock)
            logger.warning(f"[{self.tenant}] {shortage.message}")
            warning = StockWarning(
                product_id=product.id,
                product_name=product.name,
                required=quantity,
                available=product.stock,
                detail=shortage.message,
            )
        product.stock = max(0, product.stock - quantity)
        self.session.add(product)
        return warning

    def _build_items(
        self,
        order_id: int,
        inputs: list[OrderItemInput],
        products: dict[int, Product],
    ) -> tuple[list[OrderItem], list[StockWarning]]:
        rows = []
        warnings = []
        for entry in inputs:
            product = products[entry.product_id]
            unit_price = as_money(entry.unit_price if entry.unit_price is not None else product.price)
            rows.append(OrderItem(
                order_id=order_id,
                product_id=entry.product_id,
                quantity=entry.quantity,
                unit_price=unit_price,
                discount=0,
                total=unit_price * entry.quantity,
                notes=entry.notes,
            ))
            warning = self._deduct_stock(product, entry.quantity)
            if warning is not None:
                warnings.append(warning)
        return rows, warnings

    async def _publish(self, event: dict, table_id: int | None) -> None:
        if self.publisher is not None:
            await self.publisher.publish(self.tenant, event, table_id=table_id)

    # Operations

    async def create_order(self, draft: OrderDraft, items: list[OrderItemInput]) -> OrderDetail:
        table = None
        if draft.table_id is not None:
            table = await self.session.get(Table, draft.table_id)
            if table is None:
                raise NotFound("Table", draft.table_id)

        products = await self._load_products(entry.product_id for entry in items)
        lines = []
        for entry in items:
            product = products[entry.product_id]
            unit_price = entry.unit_price if entry.unit_price is not None else product.price
            lines.append(self._line(product, entry.product_id, entry.quantity, unit_price))
        pricing = compute_totals(lines, draft.discount)

        # Figures asserted by the caller win over the computed ones
        subtotal = as_money(draft.subtotal) if draft.subtotal is not None else pricing.subtotal
        tax = as_money(draft.tax) if draft.tax is not None else pricing.tax
        discount = as_money(draft.discount)
        if draft.total is not None:
            total = as_money(draft.total)
        else:
            total = max(as_money(0), subtotal + tax - discount)

        if draft.sales_channel is not None:
            sales_channel = draft.sales_channel
        else:
            sales_channel = SalesChannel.table if table is not None else SalesChannel.pos

        order = Order(
            order_number=draft.order_number or generate_order_number(),
            table_id=draft.table_id,
            status=OrderStatus.pending,
            customer_name=draft.customer_name,
            customer_count=draft.customer_count,
            subtotal=subtotal,
            tax=tax,
            discount=discount,
            total=total,
            payment_method=draft.payment_method,
            payment_status=PaymentStatus.pending,
            sales_channel=sales_channel,
            notes=draft.notes,
        )
        self.session.add(order)
        try:
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            raise ValidationError(
                f"Order number already exists: {order.order_number}",
                reason="duplicate_order_number",
            )

        rows, warnings = self._build_items(order.id, items, products)
        for row, allocation in zip(rows, pricing.item_discounts):
            row.discount = allocation
        self.session.add_all(rows)

        if table is not None:
            table.status = TableStatus.occupied
            table.updated_at = _now()
            self.session.add(table)

        await self.session.commit()

        logger.info(
            f"[{self.tenant}] Created order {order.order_number} (id={order.id}, "
            f"items={len(rows)}, total={order.total})"
        )
        await self._publish({
            "type": "new_order",
            "order_id": order.id,
            "order_number": order.order_number,
            "table_id": order.table_id,
            "total": str(order.total),
        }, table_id=order.table_id)

        return to_order_detail(order, rows, warnings)

    async def add_items(self, ref: OrderRef, items: list[OrderItemInput]) -> AddItemsResult | PlaceholderAck:
        if not items:
            raise ValidationError("No items to add", reason="no_items")
        if isinstance(ref, PendingOrder):
            logger.info(f"[{self.tenant}] Accepted items for placeholder order {ref.client_token}")
            return PlaceholderAck(id=ref.client_token)

        async with self._lock(ref.id):
            order = await self._get_order(ref.id)
            self._ensure_open(order)

            products = await self._load_products(entry.product_id for entry in items)
            rows, warnings = self._build_items(order.id, items, products)
            self.session.add_all(rows)
            await self.session.flush()

            await self._reprice(order, await self._load_items(order.id))
            order.updated_at = _now()
            self.session.add(order)
            await self.session.commit()

        await self._publish({
            "type": "items_added",
            "order_id": order.id,
            "items": len(rows),
            "total": str(order.total),
        }, table_id=order.table_id)

        return AddItemsResult(
            order=to_order_read(order),
            items=[OrderItemRead.model_validate(row) for row in rows],
            warnings=warnings,
        )

    async def update_status(
        self,
        ref: OrderRef,
        status: str | OrderStatus,
        payment_method: str | None = None,
        amount_received=None,
        change=None,
    ) -> OrderRead | PlaceholderAck:
        target = parse_status(status)
        if isinstance(ref, PendingOrder):
            logger.info(f"[{self.tenant}] Accepted status {target.value} for placeholder order {ref.client_token}")
            return PlaceholderAck(id=ref.client_token, status=target.value)

        async with self._lock(ref.id):
            order = await self._get_order(ref.id)
            current = order.status
            if target not in STATUS_TRANSITIONS[current]:
                raise OrderClosed(order.id, current.value)

            # Replaying a terminal status only re-evaluates the table
            replay = current in TERMINAL_STATUSES and target == current
            if not replay:
                order.status = target
                order.updated_at = _now()
                if target == OrderStatus.paid:
                    order.paid_at = order.updated_at
                    order.payment_status = PaymentStatus.paid
                    if payment_method:
                        order.payment_method = payment_method
                    if amount_received is not None:
                        order.amount_received = as_money(amount_received)
                    if change is not None:
                        order.change = as_money(change)
                self.session.add(order)

            if target in TERMINAL_STATUSES and order.table_id is not None:
                await self._reevaluate_table(order)

            await self.session.commit()
            await self.session.refresh(order)

        if not replay:
            event = {"type": "status_update", "order_id": order.id, "status": order.status.value}
            if target == OrderStatus.paid:
                event = {"type": "order_paid", "order_id": order.id, "payment_method": order.payment_method}
            await self._publish(event, table_id=order.table_id)

        return to_order_read(order)

    async def _reevaluate_table(self, order: Order) -> None:
        """Table is occupied iff another order on it is still active."""
        table = await self.session.get(Table, order.table_id)
        if table is None:
            logger.warning(f"[{self.tenant}] Order {order.id} references missing table {order.table_id}")
            return

        statement = (
            select(Order.id)
            .where(Order.table_id == order.table_id)
            .where(Order.id != order.id)
            .where(Order.status.in_(list(ACTIVE_STATUSES)))
            .limit(1)
        )
        other_active = (await self.session.exec(statement)).first()
        new_status = TableStatus.occupied if other_active is not None else TableStatus.available

        if table.status != new_status:
            table.status = new_status
            table.updated_at = _now()
            self.session.add(table)
        if new_status == TableStatus.available:
            logger.info(f"[{self.tenant}] Table {table.id} released after order {order.id}")
        else:
            logger.info(
                f"[{self.tenant}] Table {table.id} stays occupied: order {other_active} is still active"
            )

    async def record_payment(
        self,
        ref: OrderRef,
        payment_method: str | None = None,
        amount_received=None,
        change=None,
    ) -> OrderRead | PlaceholderAck:
        """Mark the order paid. Cash payments may also record the amount tendered and the change given."""
        return await self.update_status(
            ref,
            OrderStatus.paid,
            payment_method=payment_method,
            amount_received=amount_received,
            change=change,
        )

    async def update_discount(self, ref: OrderRef, discount) -> OrderDetail | PlaceholderAck:
        discount = as_money(discount)
        if discount < 0:
            raise ValidationError("Discount must not be negative", reason="negative_discount")
        if isinstance(ref, PendingOrder):
            return PlaceholderAck(id=ref.client_token)

        async with self._lock(ref.id):
            order = await self._get_order(ref.id)
            self._ensure_open(order)
            order.discount = discount
            items = await self._load_items(order.id)
            await self._reprice(order, items)
            order.updated_at = _now()
            self.session.add(order)
            await self.session.commit()

        await self._publish({
            "type": "discount_updated",
            "order_id": order.id,
            "discount": str(order.discount),
            "total": str(order.total),
        }, table_id=order.table_id)
        return to_order_detail(order, items)

    async def recalculate(self, ref: OrderRef) -> OrderDetail | PlaceholderAck:
        """Bring stored totals and item discounts back in line with the items."""
        if isinstance(ref, PendingOrder):
            return PlaceholderAck(id=ref.client_token)

        async with self._lock(ref.id):
            order = await self._get_order(ref.id)
            self._ensure_open(order)
            items = await self._load_items(order.id)
            await self._reprice(order, items)
            order.updated_at = _now()
            self.session.add(order)
            await self.session.commit()

        logger.info(f"[{self.tenant}] Recalculated order {order.id}: total={order.total}")
        return to_order_detail(order, items)

    async def update_item(self, item_id: int, changes: OrderItemUpdate) -> OrderItemRead:
        """Edit one item. The parent order totals are left as they are."""
        item = await self.session.get(OrderItem, item_id)
        if item is None:
            raise NotFound("Order item", item_id)

        async with self._lock(item.order_id):
            order = await self._get_order(item.order_id)
            self._ensure_open(order)

            data = changes.model_dump(exclude_unset=True)
            for key, value in data.items():
                if value is None and key != "notes":
                    continue
                setattr(item, key, value)
            item.total = as_money(item.unit_price) * item.quantity
            self.session.add(item)
            await self.session.commit()

        return OrderItemRead.model_validate(item)

    async def delete_item(self, item_id: int) -> dict:
        item = await self.session.get(OrderItem, item_id)
        if item is None:
            raise NotFound("Order item", item_id)

        order_id = item.order_id
        async with self._lock(order_id):
            order = await self._get_order(order_id)
            self._ensure_open(order)
            await self.session.delete(item)
            await self.session.commit()

        logger.info(f"[{self.tenant}] Deleted item {item_id} from order {order_id}")
        return {"status": "deleted", "item_id": item_id, "order_id": order_id}

    # Reads

    async def get_order(self, ref: OrderRef) -> OrderDetail:
        if isinstance(ref, PendingOrder):
            raise NotFound("Order", ref.client_token)
        order = await self._get_order(ref.id)
        return to_order_detail(order, await self._load_items(order.id))

    async def list_orders(
        self,
        table_id: int | None = None,
        status: str | None = None,
        sales_channel: SalesChannel | None = None,
    ) -> list[OrderRead]:
        statement = select(Order)
        if table_id is not None:
            statement = statement.where(Order.table_id == table_id)
        if status is not None:
            statement = statement.where(Order.status == parse_status(status))
        if sales_channel is not None:
            statement = statement.where(Order.sales_channel == sales_channel)
        statement = statement.order_by(Order.ordered_at.desc(), Order.id.desc())
        orders = (await self.session.exec(statement)).all()
        return [to_order_read(order) for order in orders]

    async def list_items(self, order_id: int) -> list[OrderItemRead]:
        await self._get_order(order_id)
        return [OrderItemRead.model_validate(item) for item in await self._load_items(order_id)]

    async def quote(self, items: list[OrderItemInput], discount=0) -> PricingQuote:
        """Price a prospective order without writing anything."""
        products = await self._load_products(entry.product_id for entry in items)
        lines = []
        for entry in items:
            product = products[entry.product_id]
            unit_price = entry.unit_price if entry.unit_price is not None else product.price
            lines.append(self._line(product, entry.product_id, entry.quantity, unit_price))
        pricing = compute_totals(lines, discount)

        return PricingQuote(
            subtotal=pricing.subtotal,
            tax=pricing.tax,
            discount=pricing.discount,
            total=pricing.total,
            items=[
                QuoteLine(
                    product_id=line.product_id,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    tax=tax,
                    discount=allocation,
                    total=line.unit_price * line.quantity,
                )
                for line, tax, allocation in zip(lines, pricing.item_taxes, pricing.item_discounts)
            ],
        )
