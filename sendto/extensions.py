from flask import current_app
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

# Bound in create_app; RATELIMIT_DEFAULT / RATELIMIT_ENABLED come from app.config
limiter = Limiter(key_func=get_remote_address)


def register_limit():
    """Limit for POST /register: each call spends a one-time link code upstream."""
    return current_app.config.get("REGISTER_RATE_LIMIT", "5 per minute")
