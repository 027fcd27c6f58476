import os
from decimal import Decimal

# --- DATABASE ---
DB_USER = os.getenv("DB_ROOT_USER", "root")
DB_PASS = os.getenv("DB_PASSWORD", "123456")
DB_HOST = os.getenv("ORDER_DB_HOST", "db")
DB_NAME = os.getenv("DB_NAME", "fulfillment_db")

DATABASE_URL = os.getenv(
    "DATABASE_URL", f"mysql+pymysql://{DB_USER}:{DB_PASS}@{DB_HOST}/{DB_NAME}"
)

# --- PRICING ---
TAX_RATE = Decimal(os.getenv("TAX_RATE", "0.15"))
DELIVERY_FEE = Decimal(os.getenv("DELIVERY_FEE", "100"))

# --- EXTERNAL SERVICES ---
MENU_SERVICE_URL = os.getenv("MENU_SERVICE_URL", "http://menu_service:8002")
PAYMENT_PROCESSOR_URL = os.getenv("PAYMENT_PROCESSOR_URL", "http://payment_processor:8004")
PAYMENT_PROCESSOR_API_KEY = os.getenv("PAYMENT_PROCESSOR_API_KEY", "")
AUTH_SERVICE_URL = os.getenv("AUTH_SERVICE_URL")  # None -> trust X-Staff-Id header

HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "10"))
PROCESSOR_MAX_RETRIES = int(os.getenv("PROCESSOR_MAX_RETRIES", "3"))
PROCESSOR_BACKOFF = float(os.getenv("PROCESSOR_BACKOFF", "0.5"))

# Processing payments without a callback inside this window are expired to failed
PAYMENT_CONFIRMATION_WINDOW_MINUTES = int(os.getenv("PAYMENT_CONFIRMATION_WINDOW_MINUTES", "30"))

# --- KAFKA ---
KAFKA_ENABLED = os.getenv("KAFKA_ENABLED", "true").lower() in ("1", "true", "yes")
KAFKA_BOOTSTRAP_SERVERS = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "kafka:9092")
KAFKA_TOPIC = os.getenv("KAFKA_TOPIC", "order_events")
KAFKA_CONNECT_RETRIES = int(os.getenv("KAFKA_CONNECT_RETRIES", "10"))
KAFKA_RETRY_DELAY = float(os.getenv("KAFKA_RETRY_DELAY", "5"))

# --- APP ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
PORT = os.getenv("PORT", "8003")
