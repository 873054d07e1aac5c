from fastapi import Request, FastAPI, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
import html

from storefront.shared.utils import settings, ErrorResponse

# --- Rate Limiting ---
def rate_limit_key(request: Request) -> str:
    # Per user once authenticated, per client address otherwise
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"user:{user_id}"
    return get_remote_address(request)

limiter = Limiter(key_func=rate_limit_key, enabled=settings.RATE_LIMIT_ENABLED)

async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    response = JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=ErrorResponse(message=f"Too many requests: {exc.detail}").model_dump(exclude_none=True),
    )
    return request.app.state.limiter._inject_headers(response, request.state.view_rate_limit)

def setup_rate_limiting(app: FastAPI):
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# --- Security Headers Middleware ---
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Hardening headers for a JSON-only API; order and cart payloads are never cached."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        response.headers["Referrer-Policy"] = "no-referrer"
        if request.url.path.startswith(("/orders", "/cart", "/admin")):
            response.headers["Cache-Control"] = "no-store"

        return response

# --- Input Sanitization ---
def sanitize_input(text):
    """Trim and HTML-escape free text before it is stored on an order."""
    if not isinstance(text, str):
        return text
    return html.escape(text.strip())
