"""
Shared Flask extension instances.

Created as a separate module to avoid circular imports when route
blueprints need access to extensions that are initialised in create_app().
"""

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

# Storage comes from RATELIMIT_STORAGE_URI (Redis in production, memory://
# for single-process development). init_app() is called in create_app().
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["100 per minute"],
)
