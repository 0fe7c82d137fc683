import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import models
from .errors import NotFound

logger = logging.getLogger("order-lifecycle-service")


def register_courier(
    db: Session, name: str, now: datetime, phone: str = "", bike_plate: str = "", is_active: bool = False
) -> models.Courier:
    courier = models.Courier(
        name=name,
        phone=phone,
        bike_plate=bike_plate,
        is_active=is_active,
        created_at=now,
    )
    db.add(courier)
    db.commit()
    db.refresh(courier)
    logger.info(f"Courier {courier.courier_id} registered")
    return courier


def get_courier(db: Session, courier_id: int) -> models.Courier:
    courier = db.get(models.Courier, courier_id)
    if courier is None:
        raise NotFound(f"Courier {courier_id} not found", code="COURIER_NOT_FOUND")
    return courier


def list_couriers(db: Session, active_only: bool = False) -> list[models.Courier]:
    stmt = select(models.Courier)
    if active_only:
        stmt = stmt.where(models.Courier.is_active.is_(True))
    return list(db.scalars(stmt.order_by(models.Courier.courier_id)))


def active_courier_ids(db: Session) -> set[int]:
    stmt = select(models.Courier.courier_id).where(models.Courier.is_active.is_(True))
    return set(db.scalars(stmt))


def update_location(
    db: Session, courier_id: int, latitude: float, longitude: float, now: datetime
) -> models.Courier:
    # pings are frequent and unordered; the latest write wins
    courier = get_courier(db, courier_id)
    courier.current_latitude = latitude
    courier.current_longitude = longitude
    courier.location_updated_at = now
    db.commit()
    return courier


def set_active(db: Session, courier_id: int, is_active: bool) -> models.Courier:
    courier = get_courier(db, courier_id)
    courier.is_active = is_active
    db.commit()
    logger.info(f"Courier {courier_id} is_active={is_active}")
    return courier


def rate_courier(db: Session, courier_id: int, score: int) -> models.Courier:
    courier = get_courier(db, courier_id)
    total = courier.rating * courier.ratings_count + score
    courier.ratings_count += 1
    courier.rating = total / courier.ratings_count
    db.commit()
    return courier


def record_delivery(db: Session, courier_id: int) -> None:
    """Bump the completed-delivery tally. Runs inside the caller's transaction."""
    courier = get_courier(db, courier_id)
    courier.completed_deliveries += 1
