import os


def _env_or(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


def _env_float(key: str, default: float) -> float:
    try:
        return float(_env_or(key, str(default)))
    except ValueError:
        return default


ENV = _env_or("ENV", "dev").lower()

# Durable Order Ledger (server side of record).
DB_URL = _env_or("POS_DB_URL", _env_or("DB_URL", "sqlite+pysqlite:////tmp/pos-ledger.db"))
DB_SCHEMA = os.getenv("DB_SCHEMA") if not DB_URL.startswith("sqlite") else None

# Client-local store for settlements waiting for the ledger.
QUEUE_DB_URL = _env_or("POS_QUEUE_DB_URL", "sqlite+pysqlite:////tmp/pos-queue.db")

LEDGER_BASE_URL = _env_or("POS_LEDGER_BASE_URL", "")
SETTLE_TIMEOUT_SECS = _env_float("POS_SETTLE_TIMEOUT_SECS", 5.0)
RECONCILE_INTERVAL_SECS = _env_float("POS_RECONCILE_INTERVAL_SECS", 30.0)
ORDER_NUMBER_MAX_ATTEMPTS = int(_env_float("POS_ORDER_NUMBER_MAX_ATTEMPTS", 100))

DEFAULT_PAYMENT_METHOD = "efectivo"


def use_ledger_internal() -> bool:
    """
    In-process ledger unless a POS_LEDGER_BASE_URL is configured. Setting
    POS_LEDGER_INTERNAL_MODE=on keeps the in-process transport even when a
    base URL is present (monolith deployments).
    """
    mode = (os.getenv("POS_LEDGER_INTERNAL_MODE") or "").lower()
    if mode == "on":
        return True
    return not LEDGER_BASE_URL


def docs_enabled() -> bool:
    return ENV in ("dev", "test") or os.getenv("ENABLE_API_DOCS_IN_PROD", "").lower() in (
        "1",
        "true",
        "yes",
        "on",
    )
