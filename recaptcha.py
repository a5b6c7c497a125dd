"""
Google reCAPTCHA v3 verification.

Verification fails open: when no secret key is configured, or when Google
cannot be reached, the submission is treated as human with a neutral score so
a provider outage never blocks legitimate users.
"""
from dataclasses import dataclass
from typing import Optional

import requests

from config import RECAPTCHA_MIN_SCORE, RECAPTCHA_SECRET_KEY, RECAPTCHA_TIMEOUT

VERIFY_URL = "https://www.google.com/recaptcha/api/siteverify"
FAIL_OPEN_SCORE = 0.5


@dataclass
class VerificationResult:
    success: bool
    score: float
    error: Optional[str] = None
    action: Optional[str] = None
    fail_open: bool = False


class RecaptchaVerifier:
    def __init__(
        self,
        secret_key: Optional[str] = RECAPTCHA_SECRET_KEY,
        min_score: float = RECAPTCHA_MIN_SCORE,
        timeout: int = RECAPTCHA_TIMEOUT,
    ):
        self.secret_key = secret_key
        self.min_score = min_score
        self.timeout = timeout

    @staticmethod
    def _fail_open(error: str) -> VerificationResult:
        return VerificationResult(success=True, score=FAIL_OPEN_SCORE, error=error, fail_open=True)

    def verify(self, token: Optional[str], remote_ip: Optional[str] = None) -> VerificationResult:
        """
        Verify a client token against Google.

        Args:
            token: The reCAPTCHA token posted by the form
            remote_ip: Optional client IP forwarded to Google

        Returns:
            VerificationResult; ``fail_open`` is set when the check was skipped
        """
        if not self.secret_key:
            print("WARNING: RECAPTCHA_SECRET_KEY not set, skipping reCAPTCHA verification")
            return VerificationResult(success=True, score=FAIL_OPEN_SCORE, fail_open=True)

        if not token:
            return VerificationResult(success=False, score=0.0, error="reCAPTCHA token missing")

        params = {"secret": self.secret_key, "response": token}
        if remote_ip:
            params["remoteip"] = remote_ip

        try:
            response = requests.post(VERIFY_URL, params=params, timeout=self.timeout)
            response.raise_for_status()
            result = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            print(f"reCAPTCHA verification error: {e}")
            return self._fail_open("reCAPTCHA service unavailable")

        if not isinstance(result, dict):
            print(f"reCAPTCHA verification error: unexpected response body {result!r}")
            return self._fail_open("reCAPTCHA response malformed")

        try:
            score = float(result.get("score") or 0)
        except (TypeError, ValueError):
            print(f"reCAPTCHA verification error: non-numeric score {result.get('score')!r}")
            return self._fail_open("reCAPTCHA response malformed")
        action = result.get("action")
        if result.get("success") and score >= self.min_score:
            return VerificationResult(success=True, score=score, action=action)

        return VerificationResult(
            success=False,
            score=score,
            action=action,
            error="reCAPTCHA verification failed - suspected bot activity",
        )


recaptcha_verifier = RecaptchaVerifier()
