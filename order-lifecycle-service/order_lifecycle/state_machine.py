from datetime import datetime
from enum import Enum
from typing import NamedTuple, Optional

from . import models
from .couriers import record_delivery
from .errors import IllegalTransition
from .events import OrderStatusChanged


class OrderStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    COLLECTING = "collecting"
    DELIVERING = "delivering"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class Actor(str, Enum):
    CUSTOMER = "customer"
    RESTAURANT = "restaurant"
    COURIER = "courier"
    # internal: used by the matching engine when a courier claims a delivery
    MATCHING = "matching"


TERMINAL_STATES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})


class Rule(NamedTuple):
    actors: frozenset
    requires_courier: Optional[bool] = None  # True: must be assigned, False: must not be


TRANSITIONS: dict[tuple[OrderStatus, OrderStatus], Rule] = {
    (OrderStatus.PENDING, OrderStatus.ACCEPTED): Rule(frozenset({Actor.RESTAURANT})),
    (OrderStatus.PENDING, OrderStatus.CANCELLED): Rule(frozenset({Actor.RESTAURANT, Actor.CUSTOMER})),
    (OrderStatus.ACCEPTED, OrderStatus.CANCELLED): Rule(frozenset({Actor.RESTAURANT}), requires_courier=False),
    (OrderStatus.ACCEPTED, OrderStatus.COLLECTING): Rule(frozenset({Actor.RESTAURANT, Actor.MATCHING})),
    (OrderStatus.COLLECTING, OrderStatus.DELIVERING): Rule(
        frozenset({Actor.RESTAURANT, Actor.COURIER}), requires_courier=True
    ),
    (OrderStatus.DELIVERING, OrderStatus.DELIVERED): Rule(
        frozenset({Actor.COURIER, Actor.CUSTOMER}), requires_courier=True
    ),
}


def is_terminal(status: OrderStatus) -> bool:
    return OrderStatus(status) in TERMINAL_STATES


def allowed_targets(current: OrderStatus, actor: Actor) -> list[OrderStatus]:
    current, actor = OrderStatus(current), Actor(actor)
    return [to for (frm, to), rule in TRANSITIONS.items() if frm == current and actor in rule.actors]


def check_transition(current, target, actor, has_courier: bool) -> bool:
    """False for a retry of the current status, True for a legal hop."""
    current, target, actor = OrderStatus(current), OrderStatus(target), Actor(actor)
    if current == target:
        return False
    if is_terminal(current):
        raise IllegalTransition(current.value, target.value, f"'{current.value}' is terminal")

    rule = TRANSITIONS.get((current, target))
    if rule is None or actor not in rule.actors:
        allowed = [s.value for s in allowed_targets(current, actor)]
        reason = None if rule is None else f"not allowed for {actor.value}"
        raise IllegalTransition(current.value, target.value, reason, allowed=allowed)
    if rule.requires_courier is True and not has_courier:
        raise IllegalTransition(current.value, target.value, "no courier has been assigned")
    if rule.requires_courier is False and has_courier:
        raise IllegalTransition(current.value, target.value, "a courier is already assigned")
    return True


def record_status(db, order: models.Order, from_status, to_status, actor, now: datetime) -> None:
    db.add(
        models.OrderStatusHistory(
            order=order,
            from_status=from_status,
            to_status=OrderStatus(to_status).value,
            actor=Actor(actor).value,
            changed_at=now,
        )
    )


def apply_transition(db, order: models.Order, target, actor, now: datetime) -> Optional[OrderStatusChanged]:
    # runs inside the caller's transaction; the returned event is published after commit
    if not check_transition(order.status, target, actor, order.courier_id is not None):
        return None

    old, new = OrderStatus(order.status), OrderStatus(target)
    order.status = new.value
    order.updated_at = now
    if new == OrderStatus.ACCEPTED:
        order.accepted_at = now
    elif new == OrderStatus.DELIVERED:
        order.delivered_at = now
        record_delivery(db, order.courier_id)
    record_status(db, order, old.value, new.value, actor, now)
    return OrderStatusChanged(order.order_id, old.value, new.value, Actor(actor).value, now)
