from __future__ import annotations

import hashlib
import hmac
from typing import Optional


class WebhookVerifier:
    """HMAC-SHA256 checks for inbound provider webhooks."""

    def __init__(self, app_secret: str, verify_token: str):
        self.app_secret = app_secret
        self.verify_token = verify_token

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        """Verify ``x-hub-signature-256`` against the raw request body."""
        if not signature or not self.app_secret:
            return False
        if not signature.startswith("sha256="):
            return False

        expected = self.generate_signature(payload)
        return hmac.compare_digest(signature, expected)

    def generate_signature(self, payload: bytes) -> str:
        digest = hmac.new(
            self.app_secret.encode(),
            payload,
            hashlib.sha256,
        ).hexdigest()
        return f"sha256={digest}"

    def verify_challenge(self, mode: Optional[str], token: Optional[str]) -> bool:
        if mode != "subscribe" or not token or not self.verify_token:
            return False
        return hmac.compare_digest(token, self.verify_token)
