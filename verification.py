import os
import logging
from typing import Optional, Protocol

import httpx

logger = logging.getLogger(__name__)

RECAPTCHA_VERIFY_URL = "https://www.google.com/recaptcha/api/siteverify"
RECAPTCHA_SECRET_KEY = os.getenv("RECAPTCHA_SECRET_KEY")
RECAPTCHA_MIN_SCORE = float(os.getenv("RECAPTCHA_MIN_SCORE", "0.5"))


class HumanVerifier(Protocol):
    async def verify(self, token: Optional[str], action: str) -> bool: ...


class RecaptchaVerifier:
    """reCAPTCHA v3 check. Pass/fail only; reasons go to the log."""

    def __init__(
        self,
        secret: Optional[str] = RECAPTCHA_SECRET_KEY,
        min_score: float = RECAPTCHA_MIN_SCORE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secret = secret
        self.min_score = min_score
        self.transport = transport

    async def verify(self, token: Optional[str], action: str) -> bool:
        if not self.secret:
            # Not configured: allow for development convenience
            return True
        if not token:
            logger.warning("Missing reCAPTCHA token for %s", action)
            return False
        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                resp = await client.post(RECAPTCHA_VERIFY_URL, data={"secret": self.secret, "response": token})
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("reCAPTCHA verification for %s failed: %s", action, e)
            return False

        if not data.get("success"):
            logger.warning("reCAPTCHA rejected %s: %s", action, data.get("error-codes"))
            return False
        if data.get("action") and data["action"] != action:
            logger.warning("reCAPTCHA action mismatch: expected %s, got %s", action, data["action"])
            return False
        if data.get("score", 1.0) < self.min_score:
            logger.warning("reCAPTCHA score %.2f below %.2f for %s", data["score"], self.min_score, action)
            return False
        return True
