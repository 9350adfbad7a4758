from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from asphaltworks.config import Settings
from asphaltworks.logging import get_logger
from asphaltworks.service.credentials import CredentialManager
from asphaltworks.service.errors import AuthenticationError
from asphaltworks.storage.models import utcnow

logger = get_logger(__name__)


@dataclass
class IssuedTokens:
    access_token: str
    refresh_token: str
    refresh_digest: str
    access_expires_in: int
    refresh_expires_at: datetime


class TokenIssuer:
    """HS256 access tokens plus opaque refresh tokens.

    Access tokens are self-contained: ``sub`` is the user id and the rest are
    registered claims (``iat``, ``exp``, ``iss``, ``aud``). Refresh tokens are
    random hex strings; only their digest is ever persisted.
    """

    def __init__(
        self,
        settings: Settings,
        credentials: CredentialManager,
        *,
        clock_skew_seconds: int = 30,
    ) -> None:
        self.settings = settings
        self.credentials = credentials
        self._leeway = clock_skew_seconds

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue_access_token(self, user_id: str, *, now: Optional[datetime] = None) -> str:
        issued = now or utcnow()
        expires = issued + timedelta(minutes=self.settings.access_token_ttl_minutes)
        return self._encode_jwt(
            {
                "sub": user_id,
                "iat": int(issued.timestamp()),
                "exp": int(expires.timestamp()),
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
            }
        )

    def issue(self, user_id: str, *, now: Optional[datetime] = None) -> IssuedTokens:
        """Mint an access token and a fresh refresh token for ``user_id``."""
        issued = now or utcnow()
        refresh = self.credentials.generate_token(self.settings.refresh_token_bytes)
        return IssuedTokens(
            access_token=self.issue_access_token(user_id, now=issued),
            refresh_token=refresh,
            refresh_digest=self.credentials.digest(refresh),
            access_expires_in=self.settings.access_token_ttl_minutes * 60,
            refresh_expires_at=issued
            + timedelta(minutes=self.settings.refresh_token_ttl_minutes),
        )

    def decode_access_token(self, token: str) -> str:
        """Return the user id carried by ``token``.

        Raises ``AuthenticationError`` with reason ``token_expired`` when the
        signature is good but ``exp`` has passed, and ``token_invalid`` for
        anything malformed, forged or issued for another audience.
        """
        invalid = AuthenticationError("invalid token", reason="token_invalid")
        if not isinstance(token, str) or not token.isascii():
            raise invalid
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise invalid from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise invalid from None
        if not isinstance(header, dict):
            raise invalid
        # Algorithm pinned to HS256; "none" and asymmetric algs are rejected
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise invalid

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise invalid
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_payload_decode_failed")
            raise invalid from None
        if not isinstance(payload, dict):
            raise invalid
        if payload.get("iss") != self.settings.jwt_issuer:
            raise invalid
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise invalid
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise invalid
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise invalid from None
        if exp_ts <= time.time() - self._leeway:
            raise AuthenticationError("token expired", reason="token_expired")
        return subject
