import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import config, models, schemas
from .errors import NotFound, ValidationError
from .money import to_money

logger = logging.getLogger("order-lifecycle-service")


# ----- Restaurants -----


def create_restaurant(db: Session, payload: schemas.RestaurantCreate, now: datetime) -> models.Restaurant:
    restaurant = models.Restaurant(
        owner_id=payload.owner_id,
        name=payload.name,
        address=payload.address,
        latitude=payload.latitude,
        longitude=payload.longitude,
        delivery_fee=to_money(payload.delivery_fee),
        min_order=to_money(payload.min_order),
        is_open=payload.is_open,
        created_at=now,
        updated_at=now,
    )
    db.add(restaurant)
    db.commit()
    db.refresh(restaurant)
    return restaurant


def get_restaurant(db: Session, restaurant_id: int) -> models.Restaurant:
    restaurant = db.get(models.Restaurant, restaurant_id)
    if restaurant is None:
        raise NotFound(f"Restaurant {restaurant_id} not found", code="RESTAURANT_NOT_FOUND")
    return restaurant


def list_restaurants(
    db: Session, owner_id: Optional[int] = None, open_only: bool = False, limit: int = config.DEFAULT_LIST_LIMIT
) -> list[models.Restaurant]:
    stmt = select(models.Restaurant)
    if owner_id is not None:
        stmt = stmt.where(models.Restaurant.owner_id == owner_id)
    if open_only:
        stmt = stmt.where(models.Restaurant.is_open.is_(True))
    return list(db.scalars(stmt.order_by(models.Restaurant.restaurant_id).limit(limit)))


def update_restaurant(
    db: Session, restaurant_id: int, payload: schemas.RestaurantUpdate, now: datetime
) -> models.Restaurant:
    restaurant = get_restaurant(db, restaurant_id)
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    for key in ("delivery_fee", "min_order"):
        if key in changes:
            changes[key] = to_money(changes[key])
    for key, value in changes.items():
        setattr(restaurant, key, value)
    restaurant.updated_at = now
    db.commit()
    db.refresh(restaurant)
    return restaurant


# ----- Categories -----


def create_category(
    db: Session, restaurant_id: int, payload: schemas.CategoryCreate, now: datetime
) -> models.FoodCategory:
    get_restaurant(db, restaurant_id)
    category = models.FoodCategory(
        restaurant_id=restaurant_id,
        name=payload.name,
        display_order=payload.display_order,
        is_active=payload.is_active,
        created_at=now,
    )
    db.add(category)
    db.commit()
    db.refresh(category)
    return category


def list_categories(db: Session, restaurant_id: int, active_only: bool = True) -> list[models.FoodCategory]:
    get_restaurant(db, restaurant_id)
    stmt = select(models.FoodCategory).where(models.FoodCategory.restaurant_id == restaurant_id)
    if active_only:
        stmt = stmt.where(models.FoodCategory.is_active.is_(True))
    return list(db.scalars(stmt.order_by(models.FoodCategory.display_order, models.FoodCategory.category_id)))


def _check_category(db: Session, restaurant_id: int, category_id: Optional[int]) -> None:
    if category_id is None:
        return
    category = db.get(models.FoodCategory, category_id)
    if category is None or category.restaurant_id != restaurant_id:
        raise ValidationError(
            f"Category {category_id} does not belong to restaurant {restaurant_id}",
            code="INVALID_CATEGORY",
            category_id=category_id,
        )


# ----- Dishes -----


def add_dish(db: Session, restaurant_id: int, payload: schemas.DishCreate, now: datetime) -> models.Dish:
    get_restaurant(db, restaurant_id)
    _check_category(db, restaurant_id, payload.category_id)
    dish = models.Dish(
        restaurant_id=restaurant_id,
        category_id=payload.category_id,
        name=payload.name,
        description=payload.description,
        price=to_money(payload.price),
        is_available=payload.is_available,
        created_at=now,
        updated_at=now,
    )
    db.add(dish)
    db.commit()
    db.refresh(dish)
    return dish


def list_dishes(
    db: Session, restaurant_id: int, available_only: bool = False, category_id: Optional[int] = None
) -> list[models.Dish]:
    get_restaurant(db, restaurant_id)
    stmt = select(models.Dish).where(models.Dish.restaurant_id == restaurant_id)
    if available_only:
        stmt = stmt.where(models.Dish.is_available.is_(True))
    if category_id is not None:
        stmt = stmt.where(models.Dish.category_id == category_id)
    return list(db.scalars(stmt.order_by(models.Dish.dish_id)))


def get_dish(db: Session, dish_id: int) -> models.Dish:
    dish = db.get(models.Dish, dish_id)
    if dish is None:
        raise NotFound(f"Dish {dish_id} not found", code="DISH_NOT_FOUND")
    return dish


def update_dish(db: Session, dish_id: int, payload: schemas.DishUpdate, now: datetime) -> models.Dish:
    """Change a menu entry. Orders already placed keep their price snapshot."""
    dish = get_dish(db, dish_id)
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if "price" in changes:
        changes["price"] = to_money(changes["price"])
    if "category_id" in changes:
        _check_category(db, dish.restaurant_id, changes["category_id"])
    for key, value in changes.items():
        setattr(dish, key, value)
    dish.updated_at = now
    db.commit()
    db.refresh(dish)
    logger.info(f"Dish {dish_id} updated: {sorted(changes)}")
    return dish
