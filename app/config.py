import os

from dotenv import load_dotenv

# Load .env file with explicit UTF-8 encoding
load_dotenv(encoding="utf-8")


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


# ─── Delivery retries ─────────────────────────────────────────────
DELIVERY_MAX_RETRIES = _int_env("DELIVERY_MAX_RETRIES", 3)
DELIVERY_RETRY_BATCH_SIZE = _int_env("DELIVERY_RETRY_BATCH_SIZE", 10)
DELIVERY_RETRY_CRON = os.getenv("DELIVERY_RETRY_CRON") or "*/5 * * * *"
DELIVERY_RETRY_TIMEZONE = os.getenv("DELIVERY_RETRY_TIMEZONE") or "UTC"
# A record left in a non-terminal stage longer than this is considered stalled.
DELIVERY_STALL_SECONDS = _int_env("DELIVERY_STALL_SECONDS", 900)

# ─── Channel health ───────────────────────────────────────────────
CIRCUIT_BREAKER_THRESHOLD = _int_env("CIRCUIT_BREAKER_THRESHOLD", 5)
CIRCUIT_BREAKER_COOLDOWN_SECONDS = _int_env("CIRCUIT_BREAKER_COOLDOWN_SECONDS", 30 * 60)
VALIDATION_STALE_DAYS = _int_env("VALIDATION_STALE_DAYS", 30)

# ─── Messaging gateway ────────────────────────────────────────────
MESSAGING_GATEWAY_URL = os.getenv("MESSAGING_GATEWAY_URL")
MESSAGING_GATEWAY_API_KEY = os.getenv("MESSAGING_GATEWAY_API_KEY")
MESSAGING_SEND_TIMEOUT_SECONDS = _float_env("MESSAGING_SEND_TIMEOUT_SECONDS", 10.0)

# Last-resort account taken from the environment (legacy deployments).
LEGACY_MESSAGING_CREDENTIALS_REF = os.getenv("LEGACY_MESSAGING_CREDENTIALS_REF")
LEGACY_MESSAGING_FROM_ADDRESS = os.getenv("LEGACY_MESSAGING_FROM_ADDRESS")

# ─── Templates ────────────────────────────────────────────────────
REWARD_SMS_TEMPLATE = os.getenv("REWARD_SMS_TEMPLATE")
REWARD_EMAIL_TEMPLATE = os.getenv("REWARD_EMAIL_TEMPLATE")
