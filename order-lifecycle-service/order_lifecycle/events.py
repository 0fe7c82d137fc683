import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Optional

import httpx

from . import config
from .clock import utcnow
from .metrics import NOTIFICATIONS_FAILED

logger = logging.getLogger("order-lifecycle-service")


@dataclass(frozen=True)
class OrderStatusChanged:
    order_id: int
    old_status: Optional[str]
    new_status: str
    actor: str
    occurred_at: datetime = field(default_factory=utcnow)

    def to_payload(self) -> dict:
        payload = asdict(self)
        payload["occurred_at"] = self.occurred_at.isoformat()
        payload["event_type"] = "ORDER_STATUS_CHANGED"
        return payload


class EventPublisher:
    # failures are logged and counted; the order change is already committed
    def __init__(self, notification_url: str = "", timeout: float = 5.0):
        self.notification_url = notification_url
        self.timeout = timeout

    def get_http_client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout)

    def publish(self, event: OrderStatusChanged, cid: str = "-") -> None:
        logger.info(
            f"Order {event.order_id} {event.old_status} -> {event.new_status} by {event.actor}",
            extra={"correlation_id": cid},
        )
        if not self.notification_url:
            return
        try:
            with self.get_http_client() as client:
                r = client.post(
                    f"{self.notification_url}/v1/notifications/order-events",
                    json={**event.to_payload(), "correlation_id": cid},
                    headers={"X-Correlation-Id": cid},
                )
                r.raise_for_status()
        except httpx.HTTPError as e:
            NOTIFICATIONS_FAILED.inc()
            logger.warning(
                f"Failed to forward event for order {event.order_id}: {e}",
                extra={"correlation_id": cid},
            )


def get_publisher() -> EventPublisher:
    return EventPublisher(config.NOTIFICATION_SERVICE_URL, config.HTTP_TIMEOUT_SECONDS)
