# ----------------------------------------------------------------
# Import configuration variables to be used throughout the project
# ----------------------------------------------------------------
import os
import json as _json
from dotenv import load_dotenv

# Load .env (allow container env to override file values)
load_dotenv(override=True)


def _rstrip_slash(s: str) -> str:
    return (s or "").rstrip("/")


def _get_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return str(v).strip().lower() in {"1", "true", "yes", "on", "y"}


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    try:
        return int(raw) if raw.strip() else default
    except ValueError:
        return default


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    try:
        return float(raw) if raw.strip() else default
    except ValueError:
        return default


def _get_list(name: str, default: str = "") -> list[str]:
    raw = os.getenv(name, default)
    if raw.strip().startswith("["):
        try:
            return [str(x).strip() for x in _json.loads(raw) if str(x).strip()]
        except ValueError:
            pass
    return [o.strip() for o in raw.split(",") if o.strip()]


class Settings:
    # ── ERP (Bling v3 style API) ─────────────────────────────────────────────
    ERP_API_URL: str = _rstrip_slash(os.getenv("ERP_API_URL", "https://api.bling.com.br/Api/v3"))
    ERP_TOKEN_URL: str = _rstrip_slash(
        os.getenv("ERP_TOKEN_URL", "")
        or _rstrip_slash(os.getenv("ERP_API_URL", "https://api.bling.com.br/Api/v3")) + "/oauth/token"
    )
    ERP_CLIENT_ID: str = os.getenv("ERP_CLIENT_ID", "")
    ERP_CLIENT_SECRET: str = os.getenv("ERP_CLIENT_SECRET", "")

    # Only used to seed an empty credential store
    ERP_ACCESS_TOKEN: str = os.getenv("ERP_ACCESS_TOKEN", "")
    ERP_REFRESH_TOKEN: str = os.getenv("ERP_REFRESH_TOKEN", "")

    # Request pacing / retry
    ERP_TIMEOUT: float = _get_float("ERP_TIMEOUT", 20.0)
    ERP_MIN_INTERVAL_MS: int = _get_int("ERP_MIN_INTERVAL_MS", 350)
    ERP_MAX_RETRIES: int = _get_int("ERP_MAX_RETRIES", 3)
    ERP_RETRY_BACKOFF: float = _get_float("ERP_RETRY_BACKOFF", 1.0)
    ERP_PAGE_SIZE: int = _get_int("ERP_PAGE_SIZE", 100)
    ERP_STOCK_BATCH_SIZE: int = min(_get_int("ERP_STOCK_BATCH_SIZE", 50), 50)
    ERP_TOKEN_REFRESH_MARGIN: int = _get_int("ERP_TOKEN_REFRESH_MARGIN", 300)

    # Webhook HMAC secret (support both names)
    ERP_WEBHOOK_SECRET: str = os.getenv("ERP_WEBHOOK_SECRET", "") or os.getenv("BLING_WEBHOOK_SECRET", "")
    ERP_WEBHOOK_REQUIRE_SECRET: bool = _get_bool("ERP_WEBHOOK_REQUIRE_SECRET", False)
    ERP_WEBHOOK_DEBUG: bool = _get_bool("ERP_WEBHOOK_DEBUG", False)

    # ── Storage ──────────────────────────────────────────────────────────────
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")
    # data directory is mounted: ./data ↔ /code/data (see docker-compose)
    DATA_DIR: str = os.getenv("DATA_DIR", "./data")

    BLOB_BACKEND: str = os.getenv("BLOB_BACKEND", "local").strip().lower()
    BLOB_BUCKET: str = os.getenv("BLOB_BUCKET", "product-media")
    BLOB_LOCAL_DIR: str = os.getenv("BLOB_LOCAL_DIR", "") or os.path.join(os.getenv("DATA_DIR", "./data"), "media")
    BLOB_PUBLIC_URL: str = _rstrip_slash(os.getenv("BLOB_PUBLIC_URL", "http://localhost:8000/media"))
    BLOB_HTTP_URL: str = _rstrip_slash(os.getenv("BLOB_HTTP_URL", ""))
    BLOB_HTTP_TOKEN: str = os.getenv("BLOB_HTTP_TOKEN", "")

    # ── Sync runs ────────────────────────────────────────────────────────────
    SYNC_LOG_LIMIT: int = _get_int("SYNC_LOG_LIMIT", 200)
    SYNC_DEFAULT_LIMIT: int = _get_int("SYNC_DEFAULT_LIMIT", 5)

    # ── Admin Panel ──────────────────────────────────────────────────────────
    ADMIN_USER: str = os.getenv("ADMIN_USER", "admin")
    ADMIN_PASS: str = os.getenv("ADMIN_PASS", "changeme")

    # ── CORS ─────────────────────────────────────────────────────────────────
    # Comma-separated list in .env, e.g. "https://example.com, https://foo.bar"
    CORS_ORIGINS: list[str] = _get_list("CORS_ORIGINS", "*")


settings = Settings()
