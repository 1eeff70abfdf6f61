import logging
import os


def _get_bool(key, default=False):
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# --- DATABASE ---
DB_USER = os.getenv("DB_ROOT_USER", "root")
DB_PASS = os.getenv("DB_PASSWORD", "123456")
DB_HOST = os.getenv("DB_HOST", "db")
DB_NAME = os.getenv("DB_NAME", "canteen_db")

# DATABASE_URL wins when set (sqlite for local runs and tests)
DATABASE_URL = os.getenv("DATABASE_URL") or f"mysql+pymysql://{DB_USER}:{DB_PASS}@{DB_HOST}/{DB_NAME}"

# --- AUTH ---
SECRET_KEY = os.getenv("SECRET_KEY", "change-me-canteen-secret")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60))
REQUIRE_EMAIL_CONFIRMATION = _get_bool("REQUIRE_EMAIL_CONFIRMATION", False)

# Base URL the client-side auth helper talks to. Empty means "not configured".
USER_SERVICE_URL = os.getenv("USER_SERVICE_URL", "http://user_service:8001")

# --- STORAGE ---
STORAGE_DIR = os.getenv("STORAGE_DIR", "static")
STORAGE_PUBLIC_URL = os.getenv("STORAGE_PUBLIC_URL", "/static")
DEFAULT_IMAGE_URL = os.getenv(
    "DEFAULT_IMAGE_URL",
    "https://images.unsplash.com/photo-1546069901-ba9599a7e63c?w=800&q=80",
)

# Device-local cache used by the cart and favorites before sign-in
LOCAL_CACHE_PATH = os.getenv("LOCAL_CACHE_PATH", os.path.join("~", ".canteen", "local_storage.json"))

# --- REALTIME ---
KAFKA_BOOTSTRAP_SERVERS = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "")
KAFKA_TOPIC = os.getenv("KAFKA_TOPIC", "order_changes")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def setup_logging() -> None:
    logging.basicConfig(
        level=LOG_LEVEL.upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
