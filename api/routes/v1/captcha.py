"""
api/routes/v1/captcha.py -- Captcha challenge endpoint.

Routes:
  GET /api/v1/captcha/image -- issue a one-time challenge for the caller's IP

Throttling is done by ChallengeIssuer against the store (per-IP cooldown
window); a throttled caller gets 429 rate_limited with Retry-After.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, Response

from api.limiter import client_ip
from api.models import CaptchaResponse
from auth.dependencies import get_auth_services

router = APIRouter()


@router.get("/captcha/image", response_model=CaptchaResponse)
def captcha_image(request: Request, response: Response) -> CaptchaResponse:
    """Issue a new captcha. The answer is hashed server-side and never returned."""
    issued = get_auth_services(request).challenges.issue(client_ip(request))
    response.headers["Cache-Control"] = "no-store"
    return CaptchaResponse(captcha_id=issued.id, image=issued.image, expires_in=issued.ttl_seconds)
