from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sessionguard.config import Settings
from sessionguard.logging import get_logger

logger = get_logger(__name__)


class TokenCodec:
    """HS256 access and refresh tokens bound to ``{user, session}``.

    Access tokens are signed with ``jwt_secret``; refresh tokens with the
    refresh secret so a leaked access key cannot mint refresh tokens.
    """

    def __init__(self, settings: Settings, *, clock_skew_leeway: int = 0) -> None:
        self.settings = settings
        self.clock_skew_leeway = clock_skew_leeway

    def _secret_for(self, token_type: str) -> bytes:
        if token_type == "refresh":
            return self.settings.refresh_secret.encode()
        return self.settings.jwt_secret.encode()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, token_type: str) -> str:
        digest = hmac.new(
            self._secret_for(token_type), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, payload['token_type'])}"

    def decode(self, token: str, *, token_type: str) -> Optional[dict[str, Any]]:
        """Verify signature, type, issuer, audience and expiry; None if any fails."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", token_type)
        # compare_digest only accepts ASCII str; compare bytes
        if not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode("utf-8", "surrogatepass")
        ):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict) or payload.get("token_type") != token_type:
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self.clock_skew_leeway:
            return None
        return payload

    def _payload(
        self, user_id: str, session_id: str, token_type: str, ttl_seconds: int, **claims: Any
    ) -> dict[str, Any]:
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "sid": session_id,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "exp": int(time.time()) + ttl_seconds,
            **claims,
        }

    def issue_access(self, user_id: str, session_id: str, *, email: str | None = None) -> str:
        return self.encode(
            self._payload(
                user_id,
                session_id,
                "access",
                self.settings.access_token_ttl_seconds,
                email=email,
            )
        )

    def issue_refresh(self, user_id: str, session_id: str) -> str:
        return self.encode(
            self._payload(
                user_id, session_id, "refresh", self.settings.refresh_token_expire
            )
        )

    def issue_pair(
        self, user_id: str, session_id: str, *, email: str | None = None
    ) -> dict[str, str]:
        expires_at = datetime.fromtimestamp(
            int(time.time()) + self.settings.access_token_ttl_seconds, tz=timezone.utc
        )
        return {
            "access_token": self.issue_access(user_id, session_id, email=email),
            "refresh_token": self.issue_refresh(user_id, session_id),
            "token_type": "bearer",
            "expires_at": expires_at.isoformat(),
        }

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None


__all__ = ["TokenCodec"]
