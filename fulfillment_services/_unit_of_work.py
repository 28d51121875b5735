"""
Shared transaction and locking helpers for the fulfillment services.

Every public service method runs inside ``transaction()``: commit on
success, rollback and re-raise on any failure, with driver-level lock
failures translated to typed conflicts.  Order and order-item locks are
always the first two locks a transaction takes.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from fulfillment_kernel.db.locking import (
    apply_lock_timeout,
    for_update,
    translate_lock_errors,
)
from fulfillment_kernel.domain.statuses import OrderItemStatus, OrderStatus
from fulfillment_kernel.domain.workflows import ORDER_WORKFLOW, validate_transition
from fulfillment_kernel.exceptions import OrderNotFoundError
from fulfillment_kernel.logging_config import get_logger
from fulfillment_kernel.models.order import Order, OrderItem

logger = get_logger("services.transaction")


@contextmanager
def transaction(
    session: Session,
    operation: str,
    lock_timeout_ms: int,
    resource_ids: Iterable[Any] = (),
) -> Iterator[Session]:
    """
    Unit of work for one service operation.

    Sets the lock wait bound, yields the session, and commits.  Any
    exception rolls the whole transaction back before propagating.
    """
    ids = [str(i) for i in resource_ids]
    try:
        with translate_lock_errors(operation, ids):
            apply_lock_timeout(session, lock_timeout_ms)
            yield session
            session.commit()
    except Exception as exc:
        session.rollback()
        logger.warning(
            "transaction_rolled_back",
            extra={
                "operation": operation,
                "resource_ids": ids,
                "error_type": type(exc).__name__,
                "error_code": getattr(exc, "code", None),
            },
        )
        raise


def lock_order(
    session: Session,
    order_id: UUID,
    nowait: bool = False,
    on_lock_failure: Callable[[], Exception] | None = None,
) -> Order:
    """Lock the order row; raises OrderNotFoundError when absent."""
    with translate_lock_errors("orders", [order_id], on_lock_failure):
        order = session.execute(
            for_update(select(Order).where(Order.id == order_id), nowait=nowait)
        ).scalar_one_or_none()
    if order is None:
        raise OrderNotFoundError(str(order_id))
    return order


def lock_order_items(session: Session, order_id: UUID, nowait: bool = False) -> list[OrderItem]:
    """Lock an order's items in id order; returned in line-number order."""
    with translate_lock_errors("order_items", [order_id]):
        items = list(
            session.execute(
                for_update(
                    select(OrderItem)
                    .where(OrderItem.order_id == order_id)
                    .order_by(OrderItem.id),
                    nowait=nowait,
                )
            ).scalars().all()
        )
    return sorted(items, key=lambda item: item.line_number)


def derive_item_status(item: OrderItem) -> str:
    """Item status implied by its allocated / fulfilled counters."""
    if item.status == OrderItemStatus.CANCELLED.value:
        return item.status
    if item.fulfilled_quantity > 0:
        if item.fulfilled_quantity == item.requested_quantity:
            return OrderItemStatus.FULFILLED.value
        return OrderItemStatus.PARTIALLY_FULFILLED.value
    if item.allocated_quantity == item.requested_quantity:
        return OrderItemStatus.FULLY_ALLOCATED.value
    if item.allocated_quantity > 0:
        return OrderItemStatus.PARTIALLY_ALLOCATED.value
    return OrderItemStatus.PENDING.value


def refresh_item_statuses(items: Iterable[OrderItem], actor_id: UUID) -> None:
    for item in items:
        status = derive_item_status(item)
        if status != item.status:
            item.status = status
            item.updated_by_id = actor_id


def allocation_status_for(items: Iterable[OrderItem]) -> OrderStatus:
    """Order status implied by item allocation coverage."""
    live = [i for i in items if i.status != OrderItemStatus.CANCELLED.value]
    if live and all(i.allocated_quantity == i.requested_quantity for i in live):
        return OrderStatus.ALLOCATED
    if any(i.allocated_quantity > 0 for i in live):
        return OrderStatus.PARTIALLY_ALLOCATED
    return OrderStatus.PENDING


def move_order(
    order: Order,
    target: OrderStatus,
    actor_id: UUID,
    allow_reversal: bool = False,
) -> bool:
    """
    Move the order to ``target`` through a legal edge.

    Returns False when the order is already there.
    """
    if order.status == target.value:
        return False
    validate_transition(ORDER_WORKFLOW, order.id, order.status, target, allow_reversal)
    previous = order.status
    order.status = target.value
    order.updated_by_id = actor_id
    logger.info(
        "order_status_changed",
        extra={
            "order_id": str(order.id),
            "from_status": previous,
            "to_status": target.value,
        },
    )
    return True
