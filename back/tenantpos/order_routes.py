"""
Order API Routes

Tenant-scoped order endpoints. Order identifiers in paths are parsed once into
an `OrderRef`; `temp-*` identifiers address orders the client has not synced yet.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Request, status
from sqlmodel.ext.asyncio.session import AsyncSession

from .db import get_session, get_tenant
from .models import (
    AddItemsResult,
    OrderCreate,
    OrderDetail,
    OrderDiscountUpdate,
    OrderItemRead,
    OrderItemsAdd,
    OrderItemUpdate,
    OrderPayment,
    OrderRead,
    OrderRef,
    OrderStatusUpdate,
    PlaceholderAck,
    PricingQuote,
    QuoteRequest,
    SalesChannel,
    parse_order_ref,
)
from .order_service import OrderLifecycleManager
from .settings import TenantConfig


router = APIRouter()


def get_order_manager(
    request: Request,
    tenant: Annotated[TenantConfig, Depends(get_tenant)],
    session: AsyncSession = Depends(get_session),
) -> OrderLifecycleManager:
    return OrderLifecycleManager(
        session,
        tenant=tenant.subdomain,
        locks=request.app.state.order_locks,
        publisher=request.app.state.publisher,
    )


def order_ref(order_ref: str) -> OrderRef:
    return parse_order_ref(order_ref)


Manager = Annotated[OrderLifecycleManager, Depends(get_order_manager)]
Ref = Annotated[OrderRef, Depends(order_ref)]


# ============ ORDERS ============

@router.get("/orders", response_model=list[OrderRead])
async def list_orders(
    manager: Manager,
    table_id: int | None = None,
    status: str | None = None,
    sales_channel: SalesChannel | None = None,
):
    """List orders of the tenant, newest first"""
    return await manager.list_orders(table_id=table_id, status=status, sales_channel=sales_channel)


@router.post("/orders", response_model=OrderDetail, status_code=status.HTTP_201_CREATED)
async def create_order(payload: OrderCreate, manager: Manager):
    """Create an order with its items; stock shortfalls come back in `warnings`"""
    return await manager.create_order(payload.order, payload.items)


@router.post("/orders/quote", response_model=PricingQuote)
async def quote_order(payload: QuoteRequest, manager: Manager):
    """Price items without creating an order"""
    return await manager.quote(payload.items, payload.discount)


@router.get("/orders/{order_ref}", response_model=OrderDetail)
async def get_order(ref: Ref, manager: Manager):
    return await manager.get_order(ref)


@router.get("/orders/{order_id}/items", response_model=list[OrderItemRead])
async def list_order_items(order_id: int, manager: Manager):
    return await manager.list_items(order_id)


@router.post("/orders/{order_ref}/items", response_model=AddItemsResult | PlaceholderAck)
async def add_order_items(ref: Ref, payload: OrderItemsAdd, manager: Manager):
    return await manager.add_items(ref, payload.items)


@router.put("/orders/{order_ref}/status", response_model=OrderRead | PlaceholderAck)
async def update_order_status(ref: Ref, payload: OrderStatusUpdate, manager: Manager):
    return await manager.update_status(ref, payload.status, payment_method=payload.payment_method)


@router.post("/orders/{order_ref}/payment", response_model=OrderRead | PlaceholderAck)
async def record_order_payment(ref: Ref, payload: OrderPayment, manager: Manager):
    """Mark order as paid (cash/card/transfer)"""
    return await manager.record_payment(
        ref,
        payload.payment_method,
        amount_received=payload.amount_received,
        change=payload.change,
    )


@router.put("/orders/{order_ref}/discount", response_model=OrderDetail | PlaceholderAck)
async def update_order_discount(ref: Ref, payload: OrderDiscountUpdate, manager: Manager):
    return await manager.update_discount(ref, payload.discount)


@router.post("/orders/{order_ref}/recalculate", response_model=OrderDetail | PlaceholderAck)
async def recalculate_order(ref: Ref, manager: Manager):
    """Recompute totals and discount distribution after item edits"""
    return await manager.recalculate(ref)


# ============ ORDER ITEMS ============

@router.put("/order-items/{item_id}", response_model=OrderItemRead)
async def update_order_item(item_id: int, payload: OrderItemUpdate, manager: Manager):
    """Edit a single item. Order totals are not recomputed; call /recalculate."""
    return await manager.update_item(item_id, payload)


@router.delete("/order-items/{item_id}")
async def delete_order_item(item_id: int, manager: Manager) -> dict:
    return await manager.delete_item(item_id)
