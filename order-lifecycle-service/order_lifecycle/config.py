import os

# ----- Config (from env, defaults suit local development) -----
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./order_lifecycle.db")
NOTIFICATION_SERVICE_URL = os.getenv("NOTIFICATION_SERVICE_URL", "")
DELIVERY_REQUEST_TTL_SECONDS = int(os.getenv("DELIVERY_REQUEST_TTL_SECONDS", "300"))
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "5.0"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
DEFAULT_LIST_LIMIT = int(os.getenv("DEFAULT_LIST_LIMIT", "50"))
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8002"))
