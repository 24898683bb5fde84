from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from config import settings
from security import security_manager

limiter = Limiter(
    key_func=security_manager.get_client_ip,
    storage_uri=settings.limiter_storage_uri
)

SUBMIT_LIMIT = f"{settings.rate_limit_per_minute}/minute"
STATUS_LIMIT = f"{settings.status_rate_limit_per_minute}/minute"

def setup_rate_limiting(app):
    """Setup rate limiting for the FastAPI app"""
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    return limiter
