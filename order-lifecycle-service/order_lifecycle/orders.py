import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.exc import StaleDataError

from . import config, models, schemas
from .errors import Conflict, Forbidden, LifecycleError, NotFound, ValidationError
from .events import OrderStatusChanged
from .matching import ensure_open_request, withdraw_pending_requests
from .metrics import ORDER_TRANSITIONS, ORDERS_CREATED
from .money import line_total, to_decimal
from .state_machine import Actor, OrderStatus, apply_transition, record_status

logger = logging.getLogger("order-lifecycle-service")


# ----- Helper: Restaurant + Items Validation -----


def price_items(db: Session, restaurant: models.Restaurant, items: list[schemas.OrderItemRequest]):
    """Snapshot the current price of every requested dish."""
    if not items:
        raise ValidationError("Order has no items", code="EMPTY_ORDER")

    lines = []
    subtotal = Decimal("0.00")
    for item in items:
        if item.quantity < 1:
            raise ValidationError(
                f"Quantity for dish {item.dish_id} must be at least 1",
                code="INVALID_QUANTITY",
                dish_id=item.dish_id,
            )
        dish = db.get(models.Dish, item.dish_id)
        if dish is None:
            raise NotFound(f"Dish {item.dish_id} not found", code="DISH_NOT_FOUND", dish_id=item.dish_id)
        if dish.restaurant_id != restaurant.restaurant_id:
            raise ValidationError(
                f"Dish {dish.dish_id} is not on the menu of restaurant {restaurant.restaurant_id}",
                code="INVALID_MENU_SELECTION",
                dish_id=dish.dish_id,
            )
        if not dish.is_available:
            raise ValidationError(
                f"Dish {dish.dish_id} is currently unavailable",
                code="INVALID_MENU_SELECTION",
                dish_id=dish.dish_id,
            )
        unit_price = to_decimal(dish.price)
        subtotal += line_total(unit_price, item.quantity)
        lines.append((item, unit_price))
    return lines, subtotal


# ----- Create -----


def check_order(db: Session, payload: schemas.CreateOrderRequest):
    restaurant = db.get(models.Restaurant, payload.restaurant_id)
    if restaurant is None:
        raise NotFound(f"Restaurant {payload.restaurant_id} not found", code="RESTAURANT_NOT_FOUND")
    if not restaurant.is_open:
        raise ValidationError(f"Restaurant {restaurant.restaurant_id} is closed", code="RESTAURANT_CLOSED")

    lines, subtotal = price_items(db, restaurant, payload.items)
    if subtotal < to_decimal(restaurant.min_order):
        raise ValidationError(
            f"Subtotal {subtotal} is below the minimum order of {to_decimal(restaurant.min_order)}",
            code="BELOW_MINIMUM_ORDER",
        )
    return restaurant, lines, subtotal


def create_order(
    db: Session,
    payload: schemas.CreateOrderRequest,
    now: datetime,
    publisher=None,
    cid: str = "-",
) -> models.Order:
    try:
        restaurant, lines, subtotal = check_order(db, payload)
    except LifecycleError:
        ORDERS_CREATED.labels("rejected").inc()
        raise
    delivery_fee = to_decimal(restaurant.delivery_fee)

    order = models.Order(
        customer_id=payload.customer_id,
        restaurant_id=restaurant.restaurant_id,
        status=OrderStatus.PENDING.value,
        subtotal=float(subtotal),
        delivery_fee=float(delivery_fee),
        total=float(subtotal + delivery_fee),
        delivery_address=payload.delivery_address,
        delivery_latitude=payload.delivery_latitude,
        delivery_longitude=payload.delivery_longitude,
        notes=payload.notes,
        created_at=now,
        updated_at=now,
    )
    db.add(order)
    for item, unit_price in lines:
        order.items.append(
            models.OrderItem(dish_id=item.dish_id, quantity=item.quantity, price=float(unit_price), notes=item.notes)
        )
    record_status(db, order, None, OrderStatus.PENDING, Actor.CUSTOMER, now)
    db.commit()

    ORDERS_CREATED.labels("created").inc()
    logger.info(
        f"Order {order.order_id} created for customer {order.customer_id}, total {order.total:.2f}",
        extra={"correlation_id": cid},
    )
    if publisher is not None:
        publisher.publish(
            OrderStatusChanged(order.order_id, None, order.status, Actor.CUSTOMER.value, now),
            cid,
        )
    return order


# ----- Reads -----


def get_order(db: Session, order_id: int) -> models.Order:
    order = db.get(models.Order, order_id, options=[selectinload(models.Order.items)])
    if order is None:
        raise NotFound(f"Order {order_id} not found", code="ORDER_NOT_FOUND")
    return order


def get_order_history(db: Session, order_id: int) -> list[models.OrderStatusHistory]:
    return list(get_order(db, order_id).history)


def list_orders_for(
    db: Session,
    role: Actor,
    actor_id: int,
    status: Optional[OrderStatus] = None,
    limit: int = config.DEFAULT_LIST_LIMIT,
) -> list[models.Order]:
    """Orders visible to one party, newest first."""
    column = {
        Actor.CUSTOMER: models.Order.customer_id,
        Actor.RESTAURANT: models.Order.restaurant_id,
        Actor.COURIER: models.Order.courier_id,
    }.get(Actor(role))
    if column is None:
        raise ValidationError(f"Cannot list orders for role '{role}'", code="INVALID_ROLE")

    stmt = select(models.Order).options(selectinload(models.Order.items)).where(column == actor_id)
    if status is not None:
        stmt = stmt.where(models.Order.status == OrderStatus(status).value)
    stmt = stmt.order_by(models.Order.created_at.desc(), models.Order.order_id.desc()).limit(limit)
    return list(db.scalars(stmt))


# ----- Transitions -----


def check_party(order: models.Order, actor: Actor, actor_id: int) -> None:
    owner = {
        Actor.CUSTOMER: order.customer_id,
        Actor.RESTAURANT: order.restaurant_id,
        Actor.COURIER: order.courier_id,
    }.get(Actor(actor))
    if owner != actor_id:
        raise Forbidden(
            f"{Actor(actor).value} {actor_id} is not a party to order {order.order_id}",
            code="NOT_ORDER_PARTY",
        )


def apply_status_transition(
    db: Session,
    order_id: int,
    actor: Actor,
    to_status: OrderStatus,
    now: datetime,
    actor_id: Optional[int] = None,
    expected_version: Optional[int] = None,
    publisher=None,
    cid: str = "-",
) -> models.Order:
    order = get_order(db, order_id)
    if actor_id is not None:
        check_party(order, actor, actor_id)
    if order.status == OrderStatus(to_status).value:
        return order
    if expected_version is not None and expected_version != order.version:
        raise Conflict(
            f"Order {order_id} is at version {order.version}, not {expected_version}",
            code="VERSION_MISMATCH",
            current_version=order.version,
        )

    event = apply_transition(db, order, to_status, actor, now)
    new_status = OrderStatus(to_status)
    if new_status == OrderStatus.COLLECTING:
        ensure_open_request(db, order, now)
    elif new_status == OrderStatus.CANCELLED:
        withdraw_pending_requests(db, order.order_id)

    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        raise Conflict(f"Order {order_id} was changed by another request", code="CONCURRENT_UPDATE")

    ORDER_TRANSITIONS.labels(event.old_status, event.new_status, event.actor).inc()
    if publisher is not None:
        publisher.publish(event, cid)
    return order
