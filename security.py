from fastapi import HTTPException, Security, Request
from fastapi.security.api_key import APIKeyHeader
from config import settings
import secrets
import hashlib
from typing import Optional

api_key_header = APIKeyHeader(name=settings.api_key_name, auto_error=False)
internal_token_header = APIKeyHeader(name="X-Internal-Token", auto_error=False)
authorization_header = APIKeyHeader(name="Authorization", auto_error=False)

CALLER_SCHEDULER = "scheduler"
CALLER_INTERNAL = "internal"

def _matches(provided: Optional[str], expected: Optional[str]) -> bool:
    if not provided or not expected:
        return False
    return secrets.compare_digest(provided.encode(), expected.encode())

class SecurityManager:
    def __init__(self):
        self.api_key_hash = hashlib.sha256(settings.api_key.encode()).hexdigest()

    def get_api_key(self, api_key: Optional[str] = Security(api_key_header)) -> str:
        """Validate API key"""
        if not api_key:
            raise HTTPException(
                status_code=401,
                detail="API key required",
                headers={"WWW-Authenticate": "Bearer"},
            )

        # Use constant-time comparison to prevent timing attacks
        provided_hash = hashlib.sha256(api_key.encode()).hexdigest()
        if not secrets.compare_digest(provided_hash, self.api_key_hash):
            raise HTTPException(
                status_code=403,
                detail="Invalid API key"
            )

        return api_key

    def verify_trigger_caller(
        self,
        internal_token: Optional[str] = Security(internal_token_header),
        authorization: Optional[str] = Security(authorization_header),
    ) -> str:
        """Identify who is calling the worker trigger.

        The scheduler presents ``Authorization: Bearer <CRON_SECRET>``; the
        self-retrigger and the enqueue path present the internal token.
        """
        if authorization and authorization.startswith("Bearer "):
            if _matches(authorization[len("Bearer "):], settings.cron_secret):
                return CALLER_SCHEDULER

        if _matches(internal_token, settings.internal_api_token):
            return CALLER_INTERNAL

        raise HTTPException(status_code=401, detail="Unauthorized")

    def get_client_ip(self, request: Request) -> str:
        """Get client IP address with proxy support"""
        # Check for forwarded headers (common in proxy setups)
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()

        # Fallback to direct client IP
        return request.client.host if request.client else "unknown"

# Global security manager instance
security_manager = SecurityManager()
