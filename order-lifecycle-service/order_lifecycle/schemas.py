from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .state_machine import OrderStatus

ActorRole = Literal["customer", "restaurant", "courier"]


class RequestModel(BaseModel):
    # clients send camelCase; snake_case is accepted too
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# ----- Orders -----


class OrderItemRequest(RequestModel):
    dish_id: int
    quantity: int
    notes: str = ""


class CreateOrderRequest(RequestModel):
    customer_id: int
    restaurant_id: int
    items: List[OrderItemRequest]
    delivery_address: str = ""
    delivery_latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    delivery_longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    notes: str = ""


class TransitionRequest(RequestModel):
    actor_role: ActorRole
    to_status: OrderStatus
    actor_id: Optional[int] = None
    expected_version: Optional[int] = None


class OrderItemRead(ReadModel):
    order_item_id: int
    dish_id: int
    quantity: int
    price: float
    notes: str


class OrderRead(ReadModel):
    order_id: int
    customer_id: int
    restaurant_id: int
    courier_id: Optional[int]
    status: OrderStatus
    subtotal: float
    delivery_fee: float
    total: float
    delivery_address: str
    delivery_latitude: Optional[float]
    delivery_longitude: Optional[float]
    notes: str
    created_at: datetime
    updated_at: datetime
    accepted_at: Optional[datetime]
    delivered_at: Optional[datetime]
    version: int
    items: List[OrderItemRead]


class OrderStatusHistoryRead(ReadModel):
    from_status: Optional[OrderStatus]
    to_status: OrderStatus
    actor: str
    changed_at: datetime


# ----- Delivery requests -----


class OpenDeliveryRequest(RequestModel):
    order_id: int


class CourierAction(RequestModel):
    courier_id: int


class DeliveryRequestRead(ReadModel):
    request_id: int
    order_id: int
    status: str
    courier_id: Optional[int]
    created_at: datetime
    expires_at: datetime
    accepted_at: Optional[datetime]


class OpenDeliveryRequestRead(BaseModel):
    request_id: int
    order_id: int
    status: str
    created_at: datetime
    expires_at: datetime
    restaurant_id: int
    restaurant_name: str
    pickup_address: str
    pickup_latitude: Optional[float]
    pickup_longitude: Optional[float]
    delivery_address: str
    order_total: float
    distance_km: Optional[float]


# ----- Catalog -----


class RestaurantCreate(RequestModel):
    owner_id: int
    name: str
    address: str = ""
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    delivery_fee: float = Field(default=0.0, ge=0)
    min_order: float = Field(default=0.0, ge=0)
    is_open: bool = True


class RestaurantUpdate(RequestModel):
    name: Optional[str] = None
    address: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    delivery_fee: Optional[float] = Field(default=None, ge=0)
    min_order: Optional[float] = Field(default=None, ge=0)
    is_open: Optional[bool] = None


class RestaurantRead(ReadModel):
    restaurant_id: int
    owner_id: int
    name: str
    address: str
    latitude: Optional[float]
    longitude: Optional[float]
    delivery_fee: float
    min_order: float
    is_open: bool


class CategoryCreate(RequestModel):
    name: str
    display_order: int = 0
    is_active: bool = True


class CategoryRead(ReadModel):
    category_id: int
    restaurant_id: int
    name: str
    display_order: int
    is_active: bool


class DishCreate(RequestModel):
    name: str
    description: str = ""
    price: float = Field(gt=0)
    is_available: bool = True
    category_id: Optional[int] = None


class DishUpdate(RequestModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(default=None, gt=0)
    is_available: Optional[bool] = None
    category_id: Optional[int] = None


class DishRead(ReadModel):
    dish_id: int
    restaurant_id: int
    category_id: Optional[int]
    name: str
    description: str
    price: float
    is_available: bool


# ----- Couriers -----


class CourierCreate(RequestModel):
    name: str
    phone: str = ""
    bike_plate: str = ""
    is_active: bool = False


class LocationPing(RequestModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class ActiveToggle(RequestModel):
    is_active: bool


class RatingRequest(RequestModel):
    score: int = Field(ge=1, le=5)


class CourierRead(ReadModel):
    courier_id: int
    name: str
    phone: str
    bike_plate: str
    is_active: bool
    current_latitude: Optional[float]
    current_longitude: Optional[float]
    location_updated_at: Optional[datetime]
    rating: float
    ratings_count: int
    completed_deliveries: int
