import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from . import config, models
from .couriers import active_courier_ids, get_courier
from .errors import AlreadyAccepted, Conflict, Expired, NotFound, ValidationError
from .metrics import DELIVERY_ACCEPTS, DELIVERY_REQUESTS_OPENED
from .state_machine import Actor, OrderStatus, apply_transition

logger = logging.getLogger("order-lifecycle-service")

PENDING = "pending"
ACCEPTED = "accepted"
DECLINED = "declined"
EXPIRED = "expired"

AWAITING_COURIER = (OrderStatus.ACCEPTED.value, OrderStatus.COLLECTING.value)

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lng2 - lng1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def request_ttl() -> timedelta:
    return timedelta(seconds=config.DELIVERY_REQUEST_TTL_SECONDS)


# ----- Expiry -----


def expire_stale_requests(db: Session, now: datetime, order_id: Optional[int] = None) -> int:
    # evaluated lazily by reads; the caller commits
    stmt = (
        update(models.DeliveryRequest)
        .where(models.DeliveryRequest.status == PENDING, models.DeliveryRequest.expires_at <= now)
        .values(status=EXPIRED)
    )
    if order_id is not None:
        stmt = stmt.where(models.DeliveryRequest.order_id == order_id)
    count = db.execute(stmt).rowcount
    if count:
        logger.info(f"Expired {count} delivery request(s)")
    return count


def withdraw_pending_requests(db: Session, order_id: int) -> int:
    stmt = (
        update(models.DeliveryRequest)
        .where(models.DeliveryRequest.order_id == order_id, models.DeliveryRequest.status == PENDING)
        .values(status=EXPIRED)
    )
    return db.execute(stmt).rowcount


# ----- Opening requests -----


def pending_request_for(db: Session, order_id: int) -> Optional[models.DeliveryRequest]:
    stmt = select(models.DeliveryRequest).where(
        models.DeliveryRequest.order_id == order_id, models.DeliveryRequest.status == PENDING
    )
    return db.scalars(stmt).first()


def ensure_open_request(db: Session, order: models.Order, now: datetime) -> models.DeliveryRequest:
    """Open a request for ``order`` unless one is already pending. The caller commits."""
    expire_stale_requests(db, now, order_id=order.order_id)
    existing = pending_request_for(db, order.order_id)
    if existing is not None:
        return existing
    request = models.DeliveryRequest(
        order_id=order.order_id,
        status=PENDING,
        created_at=now,
        expires_at=now + request_ttl(),
    )
    db.add(request)
    # touching the order bumps its version, so two racing openers cannot both commit
    order.updated_at = now
    DELIVERY_REQUESTS_OPENED.inc()
    return request


def open_request(db: Session, order_id: int, now: datetime, cid: str = "-") -> models.DeliveryRequest:
    order = db.get(models.Order, order_id)
    if order is None:
        raise NotFound(f"Order {order_id} not found", code="ORDER_NOT_FOUND")
    if order.status not in AWAITING_COURIER or order.courier_id is not None:
        raise Conflict(
            f"Order {order_id} is '{order.status}' and not awaiting a courier",
            code="ORDER_NOT_AWAITING_COURIER",
        )

    expire_stale_requests(db, now, order_id=order_id)
    if pending_request_for(db, order_id) is not None:
        db.commit()
        raise Conflict(
            f"Order {order_id} already has an open delivery request",
            code="REQUEST_ALREADY_OPEN",
        )

    request = ensure_open_request(db, order, now)
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        raise Conflict(f"Order {order_id} changed while opening a request", code="CONCURRENT_UPDATE")
    db.refresh(request)
    logger.info(
        f"Delivery request {request.request_id} opened for order {order_id}",
        extra={"correlation_id": cid},
    )
    return request


# ----- Reads -----


def get_request(db: Session, request_id: int, now: datetime) -> models.DeliveryRequest:
    expire_stale_requests(db, now)
    db.commit()
    request = db.get(models.DeliveryRequest, request_id, populate_existing=True)
    if request is None:
        raise NotFound(f"Delivery request {request_id} not found", code="REQUEST_NOT_FOUND")
    return request


def get_request_for_order(db: Session, order_id: int, now: datetime) -> models.DeliveryRequest:
    expire_stale_requests(db, now, order_id=order_id)
    db.commit()
    stmt = (
        select(models.DeliveryRequest)
        .where(models.DeliveryRequest.order_id == order_id)
        .order_by(models.DeliveryRequest.created_at.desc(), models.DeliveryRequest.request_id.desc())
        .execution_options(populate_existing=True)
    )
    request = db.scalars(stmt).first()
    if request is None:
        raise NotFound(f"Order {order_id} has no delivery request", code="REQUEST_NOT_FOUND")
    return request


def list_open_requests(
    db: Session,
    now: datetime,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    courier_id: Optional[int] = None,
    limit: int = 50,
) -> list[dict]:
    """Nearest restaurant first when a location is given, otherwise oldest first."""
    expire_stale_requests(db, now)
    db.commit()

    stmt = (
        select(models.DeliveryRequest, models.Order, models.Restaurant)
        .join(models.Order, models.DeliveryRequest.order_id == models.Order.order_id)
        .join(models.Restaurant, models.Order.restaurant_id == models.Restaurant.restaurant_id)
        .where(models.DeliveryRequest.status == PENDING, models.DeliveryRequest.expires_at > now)
        .order_by(models.DeliveryRequest.created_at, models.DeliveryRequest.request_id)
    )
    if courier_id is not None:
        declined = select(models.DeliveryDecline.request_id).where(models.DeliveryDecline.courier_id == courier_id)
        stmt = stmt.where(models.DeliveryRequest.request_id.not_in(declined))

    rows = []
    for request, order, restaurant in db.execute(stmt):
        distance = None
        if None not in (latitude, longitude, restaurant.latitude, restaurant.longitude):
            distance = round(haversine_km(latitude, longitude, restaurant.latitude, restaurant.longitude), 3)
        rows.append(
            {
                "request_id": request.request_id,
                "order_id": order.order_id,
                "status": request.status,
                "created_at": request.created_at,
                "expires_at": request.expires_at,
                "restaurant_id": restaurant.restaurant_id,
                "restaurant_name": restaurant.name,
                "pickup_address": restaurant.address,
                "pickup_latitude": restaurant.latitude,
                "pickup_longitude": restaurant.longitude,
                "delivery_address": order.delivery_address,
                "order_total": order.total,
                "distance_km": distance,
            }
        )

    if latitude is not None and longitude is not None:
        rows.sort(key=lambda r: (r["distance_km"] is None, r["distance_km"] or 0.0))
    return rows[:limit]


# ----- Accept / decline -----


def _closed_request_error(db: Session, request_id: int, now: datetime):
    """Explain why a conditional accept/decline matched no row."""
    request = db.get(models.DeliveryRequest, request_id, populate_existing=True)
    if request is None:
        return NotFound(f"Delivery request {request_id} not found", code="REQUEST_NOT_FOUND")
    if request.status == ACCEPTED:
        return AlreadyAccepted(
            f"Delivery request {request_id} was already taken",
            request_id=request_id,
        )
    if request.status == EXPIRED or request.expires_at <= now:
        if request.status == PENDING:
            expire_stale_requests(db, now, order_id=request.order_id)
            db.commit()
        return Expired(f"Delivery request {request_id} has expired", request_id=request_id)
    return Conflict(f"Delivery request {request_id} is {request.status}", code="REQUEST_CLOSED")


def accept_request(
    db: Session,
    request_id: int,
    courier_id: int,
    now: datetime,
    publisher=None,
    cid: str = "-",
) -> models.DeliveryRequest:
    courier = get_courier(db, courier_id)
    if not courier.is_active:
        raise ValidationError(f"Courier {courier_id} is not active", code="COURIER_INACTIVE")

    # first acceptor wins; a loser's update matches no row
    claim = (
        update(models.DeliveryRequest)
        .where(
            models.DeliveryRequest.request_id == request_id,
            models.DeliveryRequest.status == PENDING,
            models.DeliveryRequest.expires_at > now,
        )
        .values(status=ACCEPTED, courier_id=courier_id, accepted_at=now)
    )
    if db.execute(claim).rowcount != 1:
        db.rollback()
        error = _closed_request_error(db, request_id, now)
        DELIVERY_ACCEPTS.labels(type(error).__name__).inc()
        logger.info(
            f"Courier {courier_id} lost request {request_id}: {error.code}",
            extra={"correlation_id": cid},
        )
        raise error

    request = db.get(models.DeliveryRequest, request_id, populate_existing=True)
    order = db.get(models.Order, request.order_id, populate_existing=True)
    if order.status not in AWAITING_COURIER or order.courier_id is not None:
        db.rollback()
        DELIVERY_ACCEPTS.labels("Conflict").inc()
        raise Conflict(
            f"Order {order.order_id} is no longer awaiting a courier",
            code="ORDER_NOT_AWAITING_COURIER",
        )

    order.courier_id = courier_id
    order.updated_at = now
    event = None
    if order.status == OrderStatus.ACCEPTED.value:
        event = apply_transition(db, order, OrderStatus.COLLECTING, Actor.MATCHING, now)
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        DELIVERY_ACCEPTS.labels("Conflict").inc()
        raise Conflict(f"Order {order.order_id} changed concurrently", code="CONCURRENT_UPDATE")

    DELIVERY_ACCEPTS.labels("accepted").inc()
    logger.info(
        f"Courier {courier_id} accepted request {request_id} for order {order.order_id}",
        extra={"correlation_id": cid},
    )
    if event is not None and publisher is not None:
        publisher.publish(event, cid)
    return request


def decline_request(db: Session, request_id: int, courier_id: int, now: datetime, cid: str = "-") -> None:
    get_courier(db, courier_id)
    expire_stale_requests(db, now)
    db.commit()
    request = db.get(models.DeliveryRequest, request_id, populate_existing=True)
    if request is None:
        raise NotFound(f"Delivery request {request_id} not found", code="REQUEST_NOT_FOUND")
    if request.status != PENDING:
        raise _closed_request_error(db, request_id, now)

    already = db.scalars(
        select(models.DeliveryDecline).where(
            models.DeliveryDecline.request_id == request_id,
            models.DeliveryDecline.courier_id == courier_id,
        )
    ).first()
    if already is None:
        db.add(models.DeliveryDecline(request_id=request_id, courier_id=courier_id, created_at=now))
        try:
            db.flush()
        except IntegrityError:
            # the same courier declined twice at once; one row is enough
            db.rollback()
            return

    decliners = set(
        db.scalars(select(models.DeliveryDecline.courier_id).where(models.DeliveryDecline.request_id == request_id))
    )
    active = active_courier_ids(db)
    if active and active <= decliners:
        db.execute(
            update(models.DeliveryRequest)
            .where(models.DeliveryRequest.request_id == request_id, models.DeliveryRequest.status == PENDING)
            .values(status=DECLINED)
        )
        logger.info(
            f"Delivery request {request_id} declined by all active couriers",
            extra={"correlation_id": cid},
        )
    db.commit()
