from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from .clock import utcnow

Base = declarative_base()


class Restaurant(Base):
    __tablename__ = "restaurants"

    restaurant_id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, nullable=False, index=True)
    name = Column(String(200), nullable=False)
    address = Column(String(255), nullable=False, default="")
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    delivery_fee = Column(Float, nullable=False, default=0.0)
    min_order = Column(Float, nullable=False, default=0.0)
    is_open = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    dishes = relationship("Dish", back_populates="restaurant")
    categories = relationship("FoodCategory", back_populates="restaurant")


class FoodCategory(Base):
    __tablename__ = "food_categories"

    category_id = Column(Integer, primary_key=True, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.restaurant_id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    display_order = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)

    restaurant = relationship("Restaurant", back_populates="categories")


class Dish(Base):
    __tablename__ = "dishes"

    dish_id = Column(Integer, primary_key=True, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.restaurant_id"), nullable=False, index=True)
    category_id = Column(Integer, ForeignKey("food_categories.category_id"), nullable=True, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=False, default="")
    price = Column(Float, nullable=False)
    is_available = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    restaurant = relationship("Restaurant", back_populates="dishes")


class Courier(Base):
    __tablename__ = "couriers"

    courier_id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    phone = Column(String(50), nullable=False, default="")
    bike_plate = Column(String(50), nullable=False, default="")
    is_active = Column(Boolean, nullable=False, default=False)
    current_latitude = Column(Float, nullable=True)
    current_longitude = Column(Float, nullable=True)
    location_updated_at = Column(DateTime, nullable=True)
    rating = Column(Float, nullable=False, default=0.0)
    ratings_count = Column(Integer, nullable=False, default=0)
    completed_deliveries = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)


class Order(Base):
    __tablename__ = "orders"

    order_id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, nullable=False, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.restaurant_id"), nullable=False, index=True)
    courier_id = Column(Integer, ForeignKey("couriers.courier_id"), nullable=True, index=True)
    status = Column(String(20), nullable=False, default="pending")
    subtotal = Column(Float, nullable=False, default=0.0)
    delivery_fee = Column(Float, nullable=False, default=0.0)
    total = Column(Float, nullable=False, default=0.0)
    delivery_address = Column(String(255), nullable=False)
    delivery_latitude = Column(Float, nullable=True)
    delivery_longitude = Column(Float, nullable=True)
    notes = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    accepted_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False)

    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.order_item_id")
    history = relationship(
        "OrderStatusHistory", back_populates="order", order_by="OrderStatusHistory.history_id"
    )
    restaurant = relationship("Restaurant")

    # every flush checks and bumps the counter; a concurrent writer gets StaleDataError
    __mapper_args__ = {"version_id_col": version}


class OrderItem(Base):
    __tablename__ = "order_items"

    order_item_id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.order_id"), nullable=False, index=True)
    dish_id = Column(Integer, ForeignKey("dishes.dish_id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Float, nullable=False)  # snapshot of price at order time
    notes = Column(Text, nullable=False, default="")

    order = relationship("Order", back_populates="items")


class OrderStatusHistory(Base):
    __tablename__ = "order_status_history"

    history_id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.order_id"), nullable=False, index=True)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=False)
    actor = Column(String(20), nullable=False)
    changed_at = Column(DateTime, nullable=False)

    order = relationship("Order", back_populates="history")


class DeliveryRequest(Base):
    __tablename__ = "delivery_requests"

    request_id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.order_id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="pending")
    courier_id = Column(Integer, ForeignKey("couriers.courier_id"), nullable=True)
    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    accepted_at = Column(DateTime, nullable=True)

    order = relationship("Order")
    declines = relationship("DeliveryDecline", back_populates="request")


class DeliveryDecline(Base):
    __tablename__ = "delivery_declines"
    __table_args__ = (UniqueConstraint("request_id", "courier_id", name="uq_decline_request_courier"),)

    decline_id = Column(Integer, primary_key=True, index=True)
    request_id = Column(Integer, ForeignKey("delivery_requests.request_id"), nullable=False, index=True)
    courier_id = Column(Integer, ForeignKey("couriers.courier_id"), nullable=False)
    created_at = Column(DateTime, nullable=False)

    request = relationship("DeliveryRequest", back_populates="declines")
