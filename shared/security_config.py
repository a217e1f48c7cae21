from fastapi import Request, FastAPI
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
import re
import html

from shared.utils import settings

# --- Rate Limiting ---
limiter = Limiter(key_func=get_remote_address, enabled=settings.RATE_LIMIT_ENABLED)

def setup_rate_limiting(app: FastAPI):
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# --- Security Headers Middleware ---
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # Product images are served from third-party CDNs
        response.headers["Content-Security-Policy"] = "default-src 'self'; img-src 'self' https: data:; object-src 'none'; frame-ancestors 'none';"
        if settings.SESSION_COOKIE_SECURE:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response

# --- Input Sanitization ---
def sanitize_input(text):
    """
    Strip surrounding whitespace and HTML-escape free text before it is
    stored and echoed back to storefront pages. Non-strings pass through.
    """
    if not isinstance(text, str):
        return text
    return html.escape(text.strip())

def validate_password_strength(password: str) -> bool:
    """
    At least 8 characters with an uppercase letter, a lowercase letter
    and a digit.
    """
    if len(password) < 8:
        return False
    return all(re.search(pattern, password) for pattern in (r"[A-Z]", r"[a-z]", r"\d"))

SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")

def is_valid_slug(slug: str) -> bool:
    return bool(SLUG_PATTERN.match(slug))
