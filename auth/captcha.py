"""
auth/captcha.py -- Captcha challenge issuance and single-use verification.

Flow:
  1. issue(ip) -> IssuedChallenge(id, image, ttl_seconds). The answer is never
     stored in clear: only a bcrypt hash of the upper-cased code is persisted.
  2. verify(id, answer) -> bool. Every call consumes the challenge, whatever
     the outcome, so one challenge answers at most one verification.

Anti-oracle: verify() returns a bare bool. Wrong code, expired, already used
and unknown id are indistinguishable to the caller.

Throttling: issuance is limited per requester IP by counting rows created in
the last cooldown window. The count lives in the shared store, so it holds
across worker processes (with some slack under concurrent bursts).

Rendering is pluggable. The default renderer draws the code as an SVG with
noise lines and returns it as a data URI; anything that maps a code to an
image string can replace it.
"""

from __future__ import annotations

import base64
import logging
import secrets
from collections.abc import Callable
from datetime import timedelta
from html import escape

import bcrypt

from auth.errors import RateLimited
from auth.models import Challenge, IssuedChallenge
from auth.store import ChallengeStore

logger = logging.getLogger("authgate.captcha")

# Look-alike glyphs (0/O/o, 1/I/l) are left out so the puzzle stays solvable.
CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 4
_CODE_HASH_ROUNDS = 10

_WIDTH = 140
_HEIGHT = 52
_BACKGROUND = "#f8f9fb"
_PALETTE = ("#1f4e79", "#7b2d26", "#2e6b30", "#5b3a8c", "#8a5a00", "#22577a")


def generate_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def normalize_code(code: str) -> str:
    return code.strip().upper()


def render_svg(code: str) -> str:
    """Render the code as an SVG data URI."""
    rng = secrets.SystemRandom()
    parts = [
        f'<svg xmlns="http://www.w3.org/2000/svg" width="{_WIDTH}" height="{_HEIGHT}" '
        f'viewBox="0 0 {_WIDTH} {_HEIGHT}">',
        f'<rect width="100%" height="100%" fill="{_BACKGROUND}"/>',
    ]
    for _ in range(2):
        parts.append(
            '<path d="M{} {} C{} {},{} {},{} {}" stroke="{}" fill="none" stroke-width="1.5"/>'.format(
                rng.randint(0, 20),
                rng.randint(5, _HEIGHT - 5),
                rng.randint(30, 60),
                rng.randint(0, _HEIGHT),
                rng.randint(80, 110),
                rng.randint(0, _HEIGHT),
                rng.randint(_WIDTH - 20, _WIDTH),
                rng.randint(5, _HEIGHT - 5),
                rng.choice(_PALETTE),
            )
        )
    step = _WIDTH // (len(code) + 1)
    for i, char in enumerate(code):
        x = step * (i + 1)
        y = rng.randint(_HEIGHT // 2 + 4, _HEIGHT - 10)
        angle = rng.randint(-25, 25)
        parts.append(
            f'<text x="{x}" y="{y}" fill="{rng.choice(_PALETTE)}" font-family="monospace" '
            f'font-size="{rng.randint(26, 32)}" text-anchor="middle" '
            f'transform="rotate({angle} {x} {y})">{escape(char)}</text>'
        )
    parts.append("</svg>")
    svg = "".join(parts)
    return "data:image/svg+xml;base64," + base64.b64encode(svg.encode("utf-8")).decode("ascii")


class ChallengeIssuer:
    """Issue and verify one-time captcha challenges."""

    def __init__(
        self,
        store: ChallengeStore,
        ttl_seconds: int,
        cooldown_seconds: int,
        cooldown_max_requests: int,
        code_factory: Callable[[], str] = generate_code,
        renderer: Callable[[str], str] = render_svg,
    ) -> None:
        self._store = store
        self.ttl_seconds = ttl_seconds
        self.cooldown_seconds = cooldown_seconds
        self.cooldown_max_requests = cooldown_max_requests
        self._code_factory = code_factory
        self._renderer = renderer

    def issue(self, requester_ip: str | None = None) -> IssuedChallenge:
        """Create a new challenge, or raise RateLimited if the IP is over its quota."""
        now = self._store.now()
        if requester_ip:
            since = now - timedelta(seconds=self.cooldown_seconds)
            recent = self._store.count_since(requester_ip, since)
            if recent >= self.cooldown_max_requests:
                logger.warning(
                    "Captcha issuance throttled for %s (%d in %ds)",
                    requester_ip,
                    recent,
                    self.cooldown_seconds,
                )
                raise RateLimited(retry_after=max(1, self.cooldown_seconds))

        code = normalize_code(self._code_factory())
        code_hash = bcrypt.hashpw(code.encode("utf-8"), bcrypt.gensalt(rounds=_CODE_HASH_ROUNDS)).decode("utf-8")
        challenge_id = self._store.create(
            Challenge(
                code_hash=code_hash,
                ip_address=requester_ip or None,
                expires_at=now + timedelta(seconds=self.ttl_seconds),
            )
        )
        return IssuedChallenge(id=challenge_id, image=self._renderer(code), ttl_seconds=self.ttl_seconds)

    def verify(self, challenge_id: int, answer: str) -> bool:
        """Check an answer and consume the challenge. True only for a fresh, correct answer."""
        challenge = self._store.get(challenge_id)
        if challenge is None:
            return False

        if challenge.consumed or challenge.expires_at < self._store.now():
            self._store.mark_consumed(challenge_id)
            return False

        try:
            ok = bcrypt.checkpw(normalize_code(answer or "").encode("utf-8"), challenge.code_hash.encode("utf-8"))
        except ValueError:
            ok = False
        self._store.mark_consumed(challenge_id)
        return ok
