from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from paywall.core.firebase import verify_firebase_token
from paywall.core.redis_cache import RedisCache
from datetime import datetime
from typing import Optional
import logging

logger = logging.getLogger(__name__)

# Authenticated users, per uid
USER_LIMITS = {
    'per_minute': 60,
    'per_hour': 1000,
}

# Payment endpoints, per uid (each request calls a block explorer)
PAYMENT_LIMITS = {
    'per_minute': 10,
    'per_hour': 60,
}

# Unauthenticated requests, per IP
DEFAULT_IP_LIMITS = {
    'per_minute': 30,
    'per_hour': 500,
}

EXEMPT_PATHS = ['/health', '/docs', '/openapi.json', '/redoc']


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Fixed-window rate limiting keyed by Firebase uid when a valid bearer token
    is present, otherwise by client IP. Counters live in Redis; when Redis is
    unavailable requests are let through.
    """

    async def dispatch(self, request: Request, call_next):
        if request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        cache: Optional[RedisCache] = getattr(request.app.state, 'cache', None)
        if cache is None:
            return await call_next(request)

        user_id = self._get_user_id(request)
        if user_id:
            subject = f"user:{user_id}"
            limits = PAYMENT_LIMITS if '/payments/' in request.url.path else USER_LIMITS
            scope = 'payments' if limits is PAYMENT_LIMITS else 'api'
        else:
            subject = f"ip:{self._get_client_ip(request)}"
            limits = DEFAULT_IP_LIMITS
            scope = 'api'

        if not self._check_rate_limit(cache, subject, scope, limits):
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "detail": f"Rate limit exceeded. Allowed {limits['per_minute']} requests per minute. Please try again later.",
                    "retry_after": 60
                },
                headers={
                    "Retry-After": "60",
                    "X-RateLimit-Limit": str(limits['per_minute']),
                    "X-RateLimit-Remaining": "0",
                }
            )

        return await call_next(request)

    def _get_user_id(self, request: Request) -> Optional[str]:
        auth_header = request.headers.get('Authorization')
        if not auth_header or not auth_header.startswith('Bearer '):
            return None
        try:
            decoded_token = verify_firebase_token(auth_header.split(' ', 1)[1])
            return decoded_token.get('uid')
        except Exception as e:
            # The auth dependency rejects the request later
            logger.debug(f"Rate limit middleware: Could not verify token: {e}")
            return None

    def _get_client_ip(self, request: Request) -> str:
        """Extract client IP address from request"""
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip

        if request.client:
            return request.client.host

        return "unknown"

    def _check_rate_limit(self, cache: RedisCache, subject: str, scope: str, limits: dict) -> bool:
        """Count this request and report whether it is within both windows"""
        now = datetime.utcnow()
        minute_key = f"rate_limit:{scope}:{subject}:minute:{now.strftime('%Y%m%d%H%M')}"
        hour_key = f"rate_limit:{scope}:{subject}:hour:{now.strftime('%Y%m%d%H')}"

        minute_count = cache.incr(minute_key, ttl_seconds=60)
        if minute_count is not None and minute_count > limits['per_minute']:
            logger.warning(f"Rate limit exceeded (per minute) - {subject}, scope: {scope}")
            return False

        hour_count = cache.incr(hour_key, ttl_seconds=3600)
        if hour_count is not None and hour_count > limits['per_hour']:
            logger.warning(f"Rate limit exceeded (per hour) - {subject}, scope: {scope}")
            return False

        return True
