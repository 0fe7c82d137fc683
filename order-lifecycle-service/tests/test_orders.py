from decimal import Decimal

import pytest

from order_lifecycle import catalog, matching, orders, schemas
from order_lifecycle.errors import Conflict, Forbidden, IllegalTransition, NotFound, ValidationError
from order_lifecycle.money import line_total, to_money
from order_lifecycle.state_machine import TRANSITIONS, Actor, OrderStatus


def test_create_order_prices_server_side(db, clock, order_payload, publisher):
    """2 x $5.00 + 1 x $3.50 with a $3.99 fee."""
    order = orders.create_order(db, order_payload, clock.now, publisher)
    assert order.status == "pending"
    assert order.subtotal == 13.50
    assert order.delivery_fee == 3.99
    assert order.total == 17.49
    assert sum(i.price * i.quantity for i in order.items) == order.subtotal
    assert order.created_at == order.updated_at == clock.now
    assert order.courier_id is None
    assert order.version == 1
    assert [(e.old_status, e.new_status) for e in publisher.events] == [(None, "pending")]


def test_price_snapshot_survives_menu_change(db, clock, order_payload, dishes):
    order = orders.create_order(db, order_payload, clock.now)
    burger, _ = dishes
    catalog.update_dish(db, burger.dish_id, schemas.DishUpdate(price=9.00), clock.now)

    reloaded = orders.get_order(db, order.order_id)
    assert reloaded.subtotal == 13.50
    assert {i.dish_id: i.price for i in reloaded.items}[burger.dish_id] == 5.00


def test_create_order_rejects_empty_items(db, clock, restaurant):
    payload = schemas.CreateOrderRequest(
        customer_id=1, restaurant_id=restaurant.restaurant_id, delivery_address="x", items=[]
    )
    with pytest.raises(ValidationError) as exc:
        orders.create_order(db, payload, clock.now)
    assert exc.value.code == "EMPTY_ORDER"


def test_create_order_rejects_foreign_dish(db, clock, restaurant, dishes):
    other = catalog.create_restaurant(db, schemas.RestaurantCreate(owner_id=2, name="Taco Hut"), clock.now)
    taco = catalog.add_dish(db, other.restaurant_id, schemas.DishCreate(name="Taco", price=2.0), clock.now)
    payload = schemas.CreateOrderRequest(
        customer_id=1,
        restaurant_id=restaurant.restaurant_id,
        delivery_address="x",
        items=[schemas.OrderItemRequest(dish_id=taco.dish_id, quantity=1)],
    )
    with pytest.raises(ValidationError) as exc:
        orders.create_order(db, payload, clock.now)
    assert exc.value.code == "INVALID_MENU_SELECTION"


def test_create_order_rejects_unavailable_dish(db, clock, order_payload, dishes):
    _, fries = dishes
    catalog.update_dish(db, fries.dish_id, schemas.DishUpdate(is_available=False), clock.now)
    with pytest.raises(ValidationError, match="unavailable"):
        orders.create_order(db, order_payload, clock.now)


def test_create_order_unknown_dish_and_restaurant(db, clock, restaurant):
    payload = schemas.CreateOrderRequest(
        customer_id=1,
        restaurant_id=restaurant.restaurant_id,
        delivery_address="x",
        items=[schemas.OrderItemRequest(dish_id=999, quantity=1)],
    )
    with pytest.raises(NotFound):
        orders.create_order(db, payload, clock.now)
    payload.restaurant_id = 999
    with pytest.raises(NotFound):
        orders.create_order(db, payload, clock.now)


def test_create_order_rejects_zero_quantity(db, clock, restaurant, dishes):
    payload = schemas.CreateOrderRequest(
        customer_id=1,
        restaurant_id=restaurant.restaurant_id,
        delivery_address="x",
        items=[schemas.OrderItemRequest(dish_id=dishes[0].dish_id, quantity=0)],
    )
    with pytest.raises(ValidationError) as exc:
        orders.create_order(db, payload, clock.now)
    assert exc.value.code == "INVALID_QUANTITY"


def test_create_order_closed_restaurant_and_minimum(db, clock, restaurant, order_payload):
    catalog.update_restaurant(db, restaurant.restaurant_id, schemas.RestaurantUpdate(min_order=20), clock.now)
    with pytest.raises(ValidationError) as exc:
        orders.create_order(db, order_payload, clock.now)
    assert exc.value.code == "BELOW_MINIMUM_ORDER"

    catalog.update_restaurant(db, restaurant.restaurant_id, schemas.RestaurantUpdate(is_open=False), clock.now)
    with pytest.raises(ValidationError) as exc:
        orders.create_order(db, order_payload, clock.now)
    assert exc.value.code == "RESTAURANT_CLOSED"


def test_get_order_not_found(db):
    with pytest.raises(NotFound):
        orders.get_order(db, 42)


def test_list_orders_for_each_role(db, clock, order_payload, restaurant):
    first = orders.create_order(db, order_payload, clock.now)
    clock.advance(minutes=1)
    second = orders.create_order(db, order_payload, clock.now)
    orders.apply_status_transition(db, second.order_id, Actor.RESTAURANT, OrderStatus.ACCEPTED, clock.now)

    mine = orders.list_orders_for(db, Actor.CUSTOMER, 7)
    assert [o.order_id for o in mine] == [second.order_id, first.order_id]
    assert orders.list_orders_for(db, Actor.CUSTOMER, 8) == []

    accepted = orders.list_orders_for(db, Actor.RESTAURANT, restaurant.restaurant_id, OrderStatus.ACCEPTED)
    assert [o.order_id for o in accepted] == [second.order_id]
    assert orders.list_orders_for(db, Actor.COURIER, 1) == []

    with pytest.raises(ValidationError):
        orders.list_orders_for(db, Actor.MATCHING, 1)


def test_restaurant_accepts_then_collects(db, clock, order_payload, publisher):
    """Both hops succeed in order and the second one opens a delivery request."""
    order = orders.create_order(db, order_payload, clock.now)
    clock.advance(minutes=2)
    accepted = orders.apply_status_transition(
        db, order.order_id, Actor.RESTAURANT, OrderStatus.ACCEPTED, clock.now, publisher=publisher
    )
    assert accepted.status == "accepted"
    assert accepted.accepted_at == clock.now
    assert accepted.version == 2

    clock.advance(minutes=10)
    collecting = orders.apply_status_transition(
        db, order.order_id, Actor.RESTAURANT, OrderStatus.COLLECTING, clock.now, publisher=publisher
    )
    assert collecting.status == "collecting"
    request = matching.pending_request_for(db, order.order_id)
    assert request is not None
    assert request.expires_at == clock.now + matching.request_ttl()
    assert [(e.old_status, e.new_status, e.actor) for e in publisher.events] == [
        ("pending", "accepted", "restaurant"),
        ("accepted", "collecting", "restaurant"),
    ]


def test_courier_cannot_jump_to_collecting(db, clock, order_payload):
    order = orders.create_order(db, order_payload, clock.now)
    with pytest.raises(IllegalTransition):
        orders.apply_status_transition(db, order.order_id, Actor.COURIER, OrderStatus.COLLECTING, clock.now)
    assert orders.get_order(db, order.order_id).status == "pending"


def test_retrying_current_status_is_a_noop(db, clock, order_payload, publisher):
    order = orders.create_order(db, order_payload, clock.now)
    orders.apply_status_transition(db, order.order_id, Actor.RESTAURANT, OrderStatus.ACCEPTED, clock.now)
    before = orders.get_order(db, order.order_id)
    version, updated_at = before.version, before.updated_at

    clock.advance(seconds=30)
    again = orders.apply_status_transition(
        db,
        order.order_id,
        Actor.RESTAURANT,
        OrderStatus.ACCEPTED,
        clock.now,
        expected_version=1,
        publisher=publisher,
    )
    assert again.version == version
    assert again.updated_at == updated_at
    assert publisher.events == []


def test_stale_expected_version_conflicts(db, clock, order_payload):
    order = orders.create_order(db, order_payload, clock.now)
    orders.apply_status_transition(db, order.order_id, Actor.RESTAURANT, OrderStatus.ACCEPTED, clock.now)
    with pytest.raises(Conflict) as exc:
        orders.apply_status_transition(
            db, order.order_id, Actor.RESTAURANT, OrderStatus.CANCELLED, clock.now, expected_version=1
        )
    assert exc.value.code == "VERSION_MISMATCH"


def test_concurrent_writer_with_stale_read_conflicts(session_factory, clock, db, order_payload):
    order = orders.create_order(db, order_payload, clock.now)
    first, second = session_factory(), session_factory()
    try:
        stale = orders.get_order(second, order.order_id)
        assert stale.version == 1
        orders.apply_status_transition(first, order.order_id, Actor.RESTAURANT, OrderStatus.ACCEPTED, clock.now)
        # second still holds version 1 in its identity map
        with pytest.raises(Conflict) as exc:
            orders.apply_status_transition(
                second, order.order_id, Actor.CUSTOMER, OrderStatus.CANCELLED, clock.now
            )
        assert exc.value.code == "CONCURRENT_UPDATE"
    finally:
        first.close()
        second.close()


def test_actor_must_be_party_to_order(db, clock, order_payload, restaurant):
    order = orders.create_order(db, order_payload, clock.now)
    with pytest.raises(Forbidden):
        orders.apply_status_transition(
            db, order.order_id, Actor.CUSTOMER, OrderStatus.CANCELLED, clock.now, actor_id=8
        )
    cancelled = orders.apply_status_transition(
        db, order.order_id, Actor.CUSTOMER, OrderStatus.CANCELLED, clock.now, actor_id=7
    )
    assert cancelled.status == "cancelled"


def test_cancel_after_accept_withdraws_open_request(db, clock, order_payload):
    order = orders.create_order(db, order_payload, clock.now)
    orders.apply_status_transition(db, order.order_id, Actor.RESTAURANT, OrderStatus.ACCEPTED, clock.now)
    request = matching.open_request(db, order.order_id, clock.now)

    orders.apply_status_transition(db, order.order_id, Actor.RESTAURANT, OrderStatus.CANCELLED, clock.now)
    assert matching.get_request(db, request.request_id, clock.now).status == "expired"
    with pytest.raises(IllegalTransition):
        orders.apply_status_transition(db, order.order_id, Actor.RESTAURANT, OrderStatus.ACCEPTED, clock.now)


def test_history_is_a_path_through_the_table(db, clock, order_payload, courier_pair):
    alice, _ = courier_pair
    order = orders.create_order(db, order_payload, clock.now)
    orders.apply_status_transition(db, order.order_id, Actor.RESTAURANT, OrderStatus.ACCEPTED, clock.now)
    orders.apply_status_transition(db, order.order_id, Actor.RESTAURANT, OrderStatus.COLLECTING, clock.now)
    request = matching.pending_request_for(db, order.order_id)
    matching.accept_request(db, request.request_id, alice.courier_id, clock.now)
    orders.apply_status_transition(db, order.order_id, Actor.COURIER, OrderStatus.DELIVERING, clock.now)
    clock.advance(minutes=20)
    done = orders.apply_status_transition(
        db, order.order_id, Actor.CUSTOMER, OrderStatus.DELIVERED, clock.now, actor_id=7
    )
    assert done.delivered_at == clock.now

    history = orders.get_order_history(db, order.order_id)
    steps = [(h.from_status, h.to_status) for h in history]
    assert steps[0] == (None, "pending")
    for frm, to in steps[1:]:
        assert (OrderStatus(frm), OrderStatus(to)) in TRANSITIONS
    assert [to for _, to in steps] == ["pending", "accepted", "collecting", "delivering", "delivered"]

    db.refresh(alice)
    assert alice.completed_deliveries == 1


def test_money_rounds_half_up_to_cents():
    assert to_money(2.675) == 2.68
    assert to_money("0.005") == 0.01
    assert line_total(3.99, 3) == Decimal("11.97")
