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
    try:
        return int(os.getenv(name, "") or default)
    except ValueError:
        return default


def _get_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, "") or default)
    except ValueError:
        return default


def _get_json_map(name: str, default: dict | None = None) -> dict:
    raw = os.getenv(name, "")
    if not raw:
        return default or {}
    try:
        return _json.loads(raw)
    except Exception:
        return default or {}


class Settings:
    # ── Vendor catalog API ───────────────────────────────────────────────────
    VENDOR_API_URL: str = _rstrip_slash(os.getenv("VENDOR_API_URL", "https://api.ewheel.es"))
    VENDOR_API_KEY: str = os.getenv("VENDOR_API_KEY", "")
    VENDOR_PAGE_SIZE: int = _get_int("VENDOR_PAGE_SIZE", 50)

    # Pagination safety caps (misbehaving upstream never returns a short page)
    VENDOR_MAX_LIST_PAGES: int = _get_int("VENDOR_MAX_LIST_PAGES", 100)
    VENDOR_MAX_COUNT_PAGES: int = _get_int("VENDOR_MAX_COUNT_PAGES", 200)
    SYNC_MAX_PAGES: int = _get_int("SYNC_MAX_PAGES", 500)

    # ── WooCommerce / WordPress ──────────────────────────────────────────────
    WC_BASE_URL: str = _rstrip_slash(os.getenv("WC_BASE_URL", ""))
    WC_API_KEY: str = os.getenv("WC_API_KEY", "")
    WC_API_SECRET: str = os.getenv("WC_API_SECRET", "")

    # ── HTTP ─────────────────────────────────────────────────────────────────
    HTTP_TIMEOUT: float = _get_float("HTTP_TIMEOUT", 30.0)
    LLM_HTTP_TIMEOUT: float = _get_float("LLM_HTTP_TIMEOUT", 90.0)
    HTTP_VERIFY_TLS: bool = _get_bool("HTTP_VERIFY_TLS", True)

    # ── Translation defaults (operator can override in the settings store) ───
    TRANSLATION_DRIVER: str = os.getenv("TRANSLATION_DRIVER", "google")
    TRANSLATE_API_KEY: str = os.getenv("TRANSLATE_API_KEY", "")
    DEEPL_API_KEY: str = os.getenv("DEEPL_API_KEY", "")
    OPENROUTER_API_KEY: str = os.getenv("OPENROUTER_API_KEY", "")
    OPENROUTER_MODEL: str = os.getenv("OPENROUTER_MODEL", "google/gemini-2.0-flash-001")
    OPENROUTER_REFUSE_SLOW_MODELS: bool = _get_bool("OPENROUTER_REFUSE_SLOW_MODELS", True)
    TARGET_LANGUAGE: str = os.getenv("TARGET_LANGUAGE", "ro")

    # ── Pricing defaults ─────────────────────────────────────────────────────
    EXCHANGE_RATE: float = _get_float("EXCHANGE_RATE", 4.97)
    SOURCE_CURRENCY: str = os.getenv("SOURCE_CURRENCY", "EUR")
    TARGET_CURRENCY: str = os.getenv("TARGET_CURRENCY", "RON")
    MARKUP_PERCENT: float = _get_float("MARKUP_PERCENT", 20.0)
    PRICE_ROUNDING: str = os.getenv("PRICE_ROUNDING", "none")

    # Default field map, e.g. {"price": "net", "images": false}
    SYNC_FIELDS: dict = _get_json_map("SYNC_FIELDS", {})

    # ── Sync engine ──────────────────────────────────────────────────────────
    # "global": one run at a time overall; "profile": one run per profile
    SYNC_LOCK_SCOPE: str = os.getenv("SYNC_LOCK_SCOPE", "global")
    SYNC_PAGE_RETRIES: int = _get_int("SYNC_PAGE_RETRIES", 2)
    SYNC_STOCK: bool = _get_bool("SYNC_STOCK", False)
    SYNC_WORKER_ENABLED: bool = _get_bool("SYNC_WORKER_ENABLED", True)
    SYNC_TICK_INTERVAL: float = _get_float("SYNC_TICK_INTERVAL", 5.0)
    # seconds after which a tick lease left by a dead worker may be taken over
    SYNC_TICK_LEASE: int = _get_int("SYNC_TICK_LEASE", 600)

    # ── Storage ──────────────────────────────────────────────────────────────
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")

    # ── Admin Panel ──────────────────────────────────────────────────────────
    ADMIN_USER: str = os.getenv("ADMIN_USER", "admin")
    ADMIN_PASS: str = os.getenv("ADMIN_PASS", "changeme")

    # ── CORS ─────────────────────────────────────────────────────────────────
    # Comma-separated list in .env, e.g. "https://example.com, https://foo.bar"
    CORS_ORIGINS: list[str] = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]


settings = Settings()
