import os

from dotenv import load_dotenv

# Loads the .env from the project root
load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./orderflow.db")
ENV = os.getenv("ENV", "dev")
ENV_NORMALIZED = ENV.lower()
IS_DEV = ENV_NORMALIZED in {"dev", "development", "local"}
IS_TEST = ENV_NORMALIZED == "test"
IS_PROD = ENV_NORMALIZED in {"prod", "production"}

# CORS
_cors_env = os.getenv("CORS_ORIGINS", "")
CORS_ORIGINS = [origin.strip() for origin in _cors_env.split(",") if origin.strip() and origin.strip() != "*"]

if not CORS_ORIGINS and IS_DEV:
    CORS_ORIGINS = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

# Auth (JWT issued by the identity service)
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# Secrets at rest (AES-256-CBC)
ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY", "").strip()
ENCRYPTION_IV = os.getenv("ENCRYPTION_IV", "").strip()

# Meta / WhatsApp Cloud
META_APP_ID = os.getenv("META_APP_ID", "").strip()
META_APP_SECRET = os.getenv("META_APP_SECRET", "").strip()
META_API_VERSION = os.getenv("META_API_VERSION", "v22.0")
META_GRAPH_BASE_URL = os.getenv("META_GRAPH_BASE_URL", "https://graph.facebook.com").rstrip("/")
WHATSAPP_VERIFY_TOKEN = os.getenv("WHATSAPP_VERIFY_TOKEN", "").strip()
WHATSAPP_FALLBACK_TEMPLATE = os.getenv("WHATSAPP_FALLBACK_TEMPLATE", "order_update").strip()
WHATSAPP_TEMPLATE_LANGUAGE = os.getenv("WHATSAPP_TEMPLATE_LANGUAGE", "en_US").strip()

# Conversation
SESSION_TTL_HOURS = int(os.getenv("SESSION_TTL_HOURS", "24"))
PRODUCT_LIST_LIMIT = int(os.getenv("PRODUCT_LIST_LIMIT", "10"))
SESSION_MAX_RETRIES = int(os.getenv("SESSION_MAX_RETRIES", "3"))

# Payments
PAYMENT_FALLBACK_URL = os.getenv("PAYMENT_FALLBACK_URL", "https://pay.orderflow.app/pay/{order_id}")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "https://orderflow.app").rstrip("/")

# Outbound HTTP
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "20"))
HEALTH_CHECK_MAX_ATTEMPTS = int(os.getenv("HEALTH_CHECK_MAX_ATTEMPTS", "3"))
HEALTH_CHECK_BACKOFF_SECONDS = float(os.getenv("HEALTH_CHECK_BACKOFF_SECONDS", "0.5"))
