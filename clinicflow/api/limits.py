from slowapi import Limiter
from slowapi.util import get_remote_address

DEFAULT_WEBHOOK_RATE_LIMIT = "60/minute"

limiter = Limiter(key_func=get_remote_address)

_webhook_rate_limit = DEFAULT_WEBHOOK_RATE_LIMIT


def configure_rate_limit(value: str) -> None:
    """Set the webhook limit from Settings when the app is created."""
    global _webhook_rate_limit
    _webhook_rate_limit = value or DEFAULT_WEBHOOK_RATE_LIMIT


def webhook_rate_limit() -> str:
    return _webhook_rate_limit
