"""
api/limiter.py -- Shared slowapi rate limiter instance and client IP helper.

Import the limiter in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).
A single shared instance keeps one counter store for every route.

This limiter is per-process transport hygiene. The captcha cooldown in
auth/captcha.py is the store-backed throttle shared by all workers.
"""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def client_ip(request: Request) -> str | None:
    """Return the requester IP: first X-Forwarded-For hop, else the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    first_hop = forwarded.split(",")[0].strip()
    if first_hop:
        return first_hop
    return request.client.host if request.client else None
