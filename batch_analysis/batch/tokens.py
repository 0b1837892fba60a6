"""Short-lived scoped tokens embedded in job scripts.

Job scripts run on the cluster and call back into the web API: they
download the source audio and report status. Each call carries a bearer
token limited to one resource, one action and one object.

Format: base64url(payload).base64url(signature)
Payload: subject:resource:action:scope:issued_at:expires_at
"""

import base64
import hmac
import secrets
import time
from dataclasses import dataclass
from typing import Optional

import structlog

from batch_analysis.config import Settings

logger = structlog.get_logger(__name__)

MEDIA_ORIGINAL = ("media", "original")
ITEM_INVOKE = ("analysis_jobs_items", "invoke")

WILDCARD = "*"


@dataclass
class TokenClaims:
    """Claims contained in a job token."""

    subject: str
    resource: str
    action: str
    scope: str  # object id, or * for any
    issued_at: float
    expires_at: float

    def allows(self, resource: str, action: str, scope: Optional[str] = None) -> bool:
        if (self.resource, self.action) != (resource, action):
            return False
        return self.scope == WILDCARD or scope is None or self.scope == str(scope)


class TokenSigner:
    """Creates and verifies HMAC-SHA256 signed tokens."""

    def __init__(self, secret: str, expiry_seconds: int):
        self._secret = secret.encode("utf-8")
        self.expiry_seconds = expiry_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenSigner":
        secret = settings.auth_token_secret
        if not secret:
            # Tokens in already submitted scripts stop working after a restart
            logger.warning(
                "No AUTH_TOKEN_SECRET configured, using ephemeral secret",
                note="job callbacks will fail after server restart",
            )
            secret = secrets.token_urlsafe(32)
        return cls(secret, settings.auth_token_expiry_seconds)

    def _sign(self, payload: bytes) -> bytes:
        return hmac.new(self._secret, payload, digestmod="sha256").digest()

    def create(
        self,
        subject: str,
        resource: str,
        action: str,
        scope: str = WILDCARD,
        expiry_seconds: Optional[int] = None,
    ) -> str:
        for part in (subject, resource, action, scope):
            if ":" in str(part):
                raise ValueError(f"Token fields must not contain ':' ({part!r})")

        now = time.time()
        expires_at = now + (expiry_seconds or self.expiry_seconds)
        payload = f"{subject}:{resource}:{action}:{scope}:{now:.0f}:{expires_at:.0f}"
        payload_bytes = payload.encode("utf-8")

        payload_b64 = base64.urlsafe_b64encode(payload_bytes).decode("ascii")
        sig_b64 = base64.urlsafe_b64encode(self._sign(payload_bytes)).decode("ascii")
        return f"{payload_b64}.{sig_b64}"

    def verify(self, token: str) -> Optional[TokenClaims]:
        """Decode a token. Returns None if it is malformed, forged or expired."""
        if not token or "." not in token:
            logger.debug("job_token_invalid", reason="malformed")
            return None

        payload_b64, _, sig_b64 = token.partition(".")
        try:
            payload_bytes = base64.urlsafe_b64decode(payload_b64)
            provided_sig = base64.urlsafe_b64decode(sig_b64)
        except ValueError:
            logger.debug("job_token_invalid", reason="encoding")
            return None

        if not hmac.compare_digest(self._sign(payload_bytes), provided_sig):
            logger.debug("job_token_invalid", reason="signature_mismatch")
            return None

        parts = payload_bytes.decode("utf-8", errors="replace").split(":")
        if len(parts) != 6:
            logger.debug("job_token_invalid", reason="payload_format")
            return None

        subject, resource, action, scope, issued_str, expires_str = parts
        try:
            issued_at = float(issued_str)
            expires_at = float(expires_str)
        except ValueError:
            logger.debug("job_token_invalid", reason="payload_format")
            return None

        if time.time() > expires_at:
            logger.debug("job_token_invalid", reason="expired")
            return None

        return TokenClaims(
            subject=subject,
            resource=resource,
            action=action,
            scope=scope,
            issued_at=issued_at,
            expires_at=expires_at,
        )
