import logging
import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import catalog, config, couriers, db, matching, orders, schemas
from .deps import get_correlation_id, get_db, get_now
from .errors import LifecycleError, ValidationError
from .events import EventPublisher, get_publisher
from .log import setup_logging
from .metrics import MetricsMiddleware, metrics_endpoint
from .state_machine import Actor, OrderStatus

# ----- Logging -----
setup_logging()
logger = logging.getLogger("order-lifecycle-service")

# ----- Init -----
db.init_db()
app = FastAPI(title="order-lifecycle-service", version="v1")
app.add_middleware(MetricsMiddleware, service_name="order-lifecycle-service")


# ----- Error rendering -----


def _request_cid(request: Request) -> str:
    return request.headers.get("X-Correlation-Id") or str(uuid.uuid4())


@app.exception_handler(LifecycleError)
def lifecycle_error_handler(request: Request, exc: LifecycleError):
    cid = _request_cid(request)
    logger.warning(f"{exc.code}: {exc.message}", extra={"correlation_id": cid})
    detail = {**exc.to_detail(), "correlationId": cid}
    return JSONResponse(status_code=exc.status_code, content={"detail": detail})


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError):
    cid = _request_cid(request)
    detail = {
        "code": "VALIDATION_ERROR",
        "message": "Request body or parameters are invalid",
        "errors": jsonable_encoder(exc.errors()),
        "correlationId": cid,
    }
    return JSONResponse(status_code=400, content={"detail": detail})


# ----- Infra Endpoints -----
@app.get("/health")
def health():
    return {"status": "ok", "service": "order-lifecycle-service"}


@app.get("/metrics")
def metrics():
    return metrics_endpoint()


# ----- API: Orders -----


@app.post("/orders", response_model=schemas.OrderRead, status_code=201)
def create_order(
    payload: schemas.CreateOrderRequest,
    db_sess: Session = Depends(get_db),
    now: datetime = Depends(get_now),
    publisher: EventPublisher = Depends(get_publisher),
    cid: str = Depends(get_correlation_id),
):
    return orders.create_order(db_sess, payload, now, publisher, cid)


@app.get("/orders", response_model=List[schemas.OrderRead])
def list_orders(
    role: schemas.ActorRole,
    actor_id: int = Query(alias="actorId"),
    status: Optional[OrderStatus] = None,
    limit: int = Query(config.DEFAULT_LIST_LIMIT, ge=1, le=500),
    db_sess: Session = Depends(get_db),
):
    return orders.list_orders_for(db_sess, Actor(role), actor_id, status, limit)


@app.get("/orders/{order_id}", response_model=schemas.OrderRead)
def get_order(order_id: int, db_sess: Session = Depends(get_db)):
    return orders.get_order(db_sess, order_id)


@app.get("/orders/{order_id}/history", response_model=List[schemas.OrderStatusHistoryRead])
def get_order_history(order_id: int, db_sess: Session = Depends(get_db)):
    return orders.get_order_history(db_sess, order_id)


@app.post("/orders/{order_id}/transition", response_model=schemas.OrderRead)
def transition_order(
    order_id: int,
    payload: schemas.TransitionRequest,
    db_sess: Session = Depends(get_db),
    now: datetime = Depends(get_now),
    publisher: EventPublisher = Depends(get_publisher),
    cid: str = Depends(get_correlation_id),
):
    return orders.apply_status_transition(
        db_sess,
        order_id,
        Actor(payload.actor_role),
        payload.to_status,
        now,
        actor_id=payload.actor_id,
        expected_version=payload.expected_version,
        publisher=publisher,
        cid=cid,
    )


@app.get("/orders/{order_id}/delivery-request", response_model=schemas.DeliveryRequestRead)
def get_order_delivery_request(
    order_id: int,
    db_sess: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    orders.get_order(db_sess, order_id)
    return matching.get_request_for_order(db_sess, order_id, now)


# ----- API: Delivery requests -----


@app.post("/delivery-requests", response_model=schemas.DeliveryRequestRead, status_code=201)
def open_delivery_request(
    payload: schemas.OpenDeliveryRequest,
    db_sess: Session = Depends(get_db),
    now: datetime = Depends(get_now),
    cid: str = Depends(get_correlation_id),
):
    return matching.open_request(db_sess, payload.order_id, now, cid)


@app.get("/delivery-requests", response_model=List[schemas.OpenDeliveryRequestRead])
def list_delivery_requests(
    open_only: bool = Query(True, alias="open"),
    lat: Optional[float] = Query(None, ge=-90, le=90),
    lng: Optional[float] = Query(None, ge=-180, le=180),
    courier_id: Optional[int] = Query(None, alias="courierId"),
    limit: int = Query(config.DEFAULT_LIST_LIMIT, ge=1, le=500),
    db_sess: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    if not open_only:
        raise ValidationError("Only open delivery requests can be listed", code="UNSUPPORTED_FILTER")
    if (lat is None) != (lng is None):
        raise ValidationError("lat and lng must be given together", code="INCOMPLETE_LOCATION")
    return matching.list_open_requests(db_sess, now, lat, lng, courier_id, limit)


@app.get("/delivery-requests/{request_id}", response_model=schemas.DeliveryRequestRead)
def get_delivery_request(
    request_id: int,
    db_sess: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    return matching.get_request(db_sess, request_id, now)


@app.post("/delivery-requests/{request_id}/accept", response_model=schemas.DeliveryRequestRead)
def accept_delivery_request(
    request_id: int,
    payload: schemas.CourierAction,
    db_sess: Session = Depends(get_db),
    now: datetime = Depends(get_now),
    publisher: EventPublisher = Depends(get_publisher),
    cid: str = Depends(get_correlation_id),
):
    return matching.accept_request(db_sess, request_id, payload.courier_id, now, publisher, cid)


@app.post("/delivery-requests/{request_id}/decline", status_code=204)
def decline_delivery_request(
    request_id: int,
    payload: schemas.CourierAction,
    db_sess: Session = Depends(get_db),
    now: datetime = Depends(get_now),
    cid: str = Depends(get_correlation_id),
):
    matching.decline_request(db_sess, request_id, payload.courier_id, now, cid)
    return Response(status_code=204)


# ----- API: Restaurants & dishes -----


@app.post("/restaurants", response_model=schemas.RestaurantRead, status_code=201)
def create_restaurant(
    payload: schemas.RestaurantCreate,
    db_sess: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    return catalog.create_restaurant(db_sess, payload, now)


@app.get("/restaurants", response_model=List[schemas.RestaurantRead])
def list_restaurants(
    owner_id: Optional[int] = Query(None, alias="ownerId"),
    open_only: bool = Query(False, alias="open"),
    limit: int = Query(config.DEFAULT_LIST_LIMIT, ge=1, le=500),
    db_sess: Session = Depends(get_db),
):
    return catalog.list_restaurants(db_sess, owner_id=owner_id, open_only=open_only, limit=limit)


@app.get("/restaurants/{restaurant_id}", response_model=schemas.RestaurantRead)
def get_restaurant(restaurant_id: int, db_sess: Session = Depends(get_db)):
    return catalog.get_restaurant(db_sess, restaurant_id)


@app.patch("/restaurants/{restaurant_id}", response_model=schemas.RestaurantRead)
def update_restaurant(
    restaurant_id: int,
    payload: schemas.RestaurantUpdate,
    db_sess: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    return catalog.update_restaurant(db_sess, restaurant_id, payload, now)


@app.post("/restaurants/{restaurant_id}/categories", response_model=schemas.CategoryRead, status_code=201)
def create_category(
    restaurant_id: int,
    payload: schemas.CategoryCreate,
    db_sess: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    return catalog.create_category(db_sess, restaurant_id, payload, now)


@app.get("/restaurants/{restaurant_id}/categories", response_model=List[schemas.CategoryRead])
def list_categories(
    restaurant_id: int,
    include_inactive: bool = Query(False, alias="includeInactive"),
    db_sess: Session = Depends(get_db),
):
    return catalog.list_categories(db_sess, restaurant_id, active_only=not include_inactive)


@app.post("/restaurants/{restaurant_id}/dishes", response_model=schemas.DishRead, status_code=201)
def add_dish(
    restaurant_id: int,
    payload: schemas.DishCreate,
    db_sess: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    return catalog.add_dish(db_sess, restaurant_id, payload, now)


@app.get("/restaurants/{restaurant_id}/dishes", response_model=List[schemas.DishRead])
def list_dishes(
    restaurant_id: int,
    available: bool = False,
    category_id: Optional[int] = Query(None, alias="categoryId"),
    db_sess: Session = Depends(get_db),
):
    return catalog.list_dishes(db_sess, restaurant_id, available_only=available, category_id=category_id)


@app.patch("/dishes/{dish_id}", response_model=schemas.DishRead)
def update_dish(
    dish_id: int,
    payload: schemas.DishUpdate,
    db_sess: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    return catalog.update_dish(db_sess, dish_id, payload, now)


# ----- API: Couriers -----


@app.post("/couriers", response_model=schemas.CourierRead, status_code=201)
def register_courier(
    payload: schemas.CourierCreate,
    db_sess: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    return couriers.register_courier(
        db_sess, payload.name, now, phone=payload.phone, bike_plate=payload.bike_plate, is_active=payload.is_active
    )


@app.get("/couriers", response_model=List[schemas.CourierRead])
def list_couriers(active: bool = False, db_sess: Session = Depends(get_db)):
    return couriers.list_couriers(db_sess, active_only=active)


@app.get("/couriers/{courier_id}", response_model=schemas.CourierRead)
def get_courier(courier_id: int, db_sess: Session = Depends(get_db)):
    return couriers.get_courier(db_sess, courier_id)


@app.put("/couriers/{courier_id}/location", response_model=schemas.CourierRead)
def update_courier_location(
    courier_id: int,
    payload: schemas.LocationPing,
    db_sess: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    return couriers.update_location(db_sess, courier_id, payload.latitude, payload.longitude, now)


@app.put("/couriers/{courier_id}/active", response_model=schemas.CourierRead)
def set_courier_active(
    courier_id: int,
    payload: schemas.ActiveToggle,
    db_sess: Session = Depends(get_db),
):
    return couriers.set_active(db_sess, courier_id, payload.is_active)


@app.post("/couriers/{courier_id}/ratings", response_model=schemas.CourierRead)
def rate_courier(
    courier_id: int,
    payload: schemas.RatingRequest,
    db_sess: Session = Depends(get_db),
):
    return couriers.rate_courier(db_sess, courier_id, payload.score)
