from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Optional
from urllib import parse, request
from urllib.error import URLError

from charterdesk.app.settings import Settings

logger = logging.getLogger("charterdesk.recaptcha")

SITEVERIFY_URL = "https://www.google.com/recaptcha/api/siteverify"
QUOTE_ACTION = "quote_submit"
CONTACT_ACTION = "contact_submit"


class RecaptchaServiceError(Exception):
    pass


class RecaptchaVerificationError(Exception):
    pass


class RecaptchaMissingTokenError(RecaptchaVerificationError):
    pass


@dataclass(frozen=True)
class RecaptchaVerificationResult:
    success: bool
    score: float
    action: Optional[str]
    hostname: Optional[str]


def verify_recaptcha_token(
    *,
    token: str,
    secret: str,
    min_score: float,
    remote_ip: Optional[str] = None,
    expected_action: Optional[str] = None,
) -> RecaptchaVerificationResult:
    payload = {"secret": secret, "response": token}
    if remote_ip:
        payload["remoteip"] = remote_ip
    req = request.Request(
        SITEVERIFY_URL,
        data=parse.urlencode(payload).encode("utf-8"),
        method="POST",
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    try:
        with request.urlopen(req, timeout=8) as response:
            body = response.read().decode("utf-8")
    except URLError as exc:
        raise RecaptchaServiceError("recaptcha verification request failed") from exc

    try:
        decoded = json.loads(body)
    except json.JSONDecodeError as exc:
        raise RecaptchaServiceError("recaptcha verification response was not valid json") from exc

    score = float(decoded.get("score", 0.0) or 0.0)
    action = decoded.get("action")
    if not decoded.get("success"):
        raise RecaptchaVerificationError("recaptcha token rejected")
    if score < min_score:
        raise RecaptchaVerificationError("recaptcha score below threshold")
    if expected_action and action and action != expected_action:
        raise RecaptchaVerificationError("recaptcha action mismatch")

    return RecaptchaVerificationResult(
        success=True,
        score=score,
        action=action,
        hostname=decoded.get("hostname"),
    )


def verify_submission(
    settings: Settings,
    *,
    token: Optional[str],
    action: str,
    remote_ip: Optional[str] = None,
) -> Optional[RecaptchaVerificationResult]:
    """Check a public form token when reCAPTCHA is switched on; no-op otherwise."""
    if not settings.recaptcha_enabled:
        return None
    if not settings.recaptcha_secret:
        raise RecaptchaServiceError("recaptcha is enabled but secret is not configured")
    if not token:
        raise RecaptchaMissingTokenError("missing recaptcha token")
    result = verify_recaptcha_token(
        token=token,
        secret=settings.recaptcha_secret,
        min_score=settings.recaptcha_min_score,
        remote_ip=remote_ip,
        expected_action=action,
    )
    logger.info("recaptcha_verified action=%s score=%.2f", action, result.score)
    return result
