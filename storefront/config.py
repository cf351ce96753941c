"""Runtime configuration for the storefront (loaded from env, overridable in tests)."""
import logging
import os
from typing import NamedTuple

logger = logging.getLogger(__name__)

DEFAULT_SECRET = "dev-secret"


class ConfigState(NamedTuple):
    auth_secret: str = DEFAULT_SECRET
    session_max_age: int = 60 * 60 * 24 * 7  # 7 days
    session_cookie_name: str = "session"
    cookie_secure: bool = False
    reset_token_ttl: int = 60 * 60  # 1 hour
    gateway_base_url: str = "https://api.xendit.co"
    gateway_secret_key: str | None = None
    gateway_callback_token: str | None = None
    gateway_timeout: float = 10.0
    min_invoice_amount: int = 10000
    base_url: str | None = None
    debug: bool = False


def _flag(value: str | None) -> bool:
    return (value or "").lower() in ("1", "true", "yes", "on")


def load_from_env(environ=None) -> ConfigState:
    env = os.environ if environ is None else environ
    secret = env.get("AUTH_SECRET")
    if not secret:
        logger.warning("AUTH_SECRET not set; using the development secret")
    defaults = ConfigState()
    return ConfigState(
        auth_secret=secret or DEFAULT_SECRET,
        session_max_age=int(env.get("SESSION_MAX_AGE", defaults.session_max_age)),
        session_cookie_name=env.get("SESSION_COOKIE_NAME", defaults.session_cookie_name),
        cookie_secure=_flag(env.get("COOKIE_SECURE")),
        reset_token_ttl=int(env.get("RESET_TOKEN_TTL", defaults.reset_token_ttl)),
        gateway_base_url=env.get("XENDIT_BASE_URL", defaults.gateway_base_url).rstrip("/"),
        gateway_secret_key=env.get("XENDIT_SECRET_KEY") or None,
        gateway_callback_token=env.get("XENDIT_CALLBACK_TOKEN") or None,
        gateway_timeout=float(env.get("GATEWAY_TIMEOUT", defaults.gateway_timeout)),
        min_invoice_amount=int(env.get("MIN_INVOICE_AMOUNT", defaults.min_invoice_amount)),
        base_url=(env.get("BASE_URL") or "").rstrip("/") or None,
        debug=_flag(env.get("DEBUG")),
    )


# Default: development settings until init_from_env() runs
state = ConfigState()


def init_from_env():
    global state
    state = load_from_env()


def get_config() -> ConfigState:
    """FastAPI dependency returning the current runtime config."""
    return state
