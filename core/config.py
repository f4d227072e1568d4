import os
import logging
from dotenv import load_dotenv

# Load .env from project root
try:
    load_dotenv(dotenv_path=os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".env")))
except Exception:
    load_dotenv()

# Database (Postgres in production, SQLite file for local runs)
DATABASE_URL = (os.getenv("DATABASE_URL", "") or "sqlite:///./blindbox.db").strip()

# Order lifecycle timers
ORDER_CANCEL_DELAY_SEC = int(os.getenv("ORDER_CANCEL_DELAY_SEC", "600"))
ORDER_AUTO_DELIVER_DELAY_SEC = int(os.getenv("ORDER_AUTO_DELIVER_DELAY_SEC", "30"))
# Periodic sweep that applies transitions whose timers were lost on restart
ORDER_SWEEP_INTERVAL_SEC = int(os.getenv("ORDER_SWEEP_INTERVAL_SEC", "60"))
RUN_ORDER_TIMERS = (os.getenv("RUN_ORDER_TIMERS") or "1").strip() == "1"

# Coupon expiry sweep
COUPON_EXPIRE_INTERVAL_SEC = int(os.getenv("COUPON_EXPIRE_INTERVAL_SEC", "3600"))

# Probability table tolerance
PROBABILITY_EPSILON = float(os.getenv("PROBABILITY_EPSILON", "0.001"))

# Payment gateway
GATEWAY_API_BASE = os.getenv("GATEWAY_API_BASE", "https://openapi-sandbox.gateway.example").rstrip("/")
GATEWAY_CHECKOUT_PATH = os.getenv("GATEWAY_CHECKOUT_PATH", "/v1/payment-links").strip()
if not GATEWAY_CHECKOUT_PATH.startswith("/"):
    GATEWAY_CHECKOUT_PATH = "/" + GATEWAY_CHECKOUT_PATH
GATEWAY_API_KEY = (os.getenv("GATEWAY_API_KEY") or os.getenv("GATEWAY_APP_KEY") or "").strip()
# whsec_* secrets use Standard Webhooks headers; anything else is a shared HMAC key
GATEWAY_WEBHOOK_SECRET = (
    os.getenv("GATEWAY_WEBHOOK_SECRET")
    or os.getenv("GATEWAY_NOTIFY_SECRET")
    or ""
).strip()
GATEWAY_NOTIFY_URL = os.getenv("GATEWAY_NOTIFY_URL", "http://localhost:7001/api/pay/notify").strip()
GATEWAY_RETURN_URL = os.getenv("GATEWAY_RETURN_URL", "http://localhost:5173").strip()
GATEWAY_TIMEOUT_SEC = float(os.getenv("GATEWAY_TIMEOUT_SEC", "10"))

# CORS
_default_origins = "http://localhost:5173,http://127.0.0.1:5173"
ALLOWED_ORIGINS = [o.strip() for o in (os.getenv("ALLOWED_ORIGINS") or _default_origins).split(",") if o.strip()]

# Logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")
logger = logging.getLogger("blindbox")
