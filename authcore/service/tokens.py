from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import InvalidTokenError
from authcore.storage.models import User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"

    def as_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "token_type": self.token_type,
        }


class TokenService:
    """Mints and verifies HS256 access/refresh tokens.

    Access and refresh tokens are signed with different secrets and carry
    different ``token_type`` claims, so neither class can be presented as the
    other. The embedded ``tkv`` claim is the user's token epoch at mint time;
    comparing it with the live record is the caller's job (see
    :meth:`epoch_matches`).
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._secrets = {
            ACCESS: settings.jwt_secret.encode(),
            REFRESH: settings.refresh_token_secret.encode(),
        }
        self._ttl = {
            ACCESS: timedelta(minutes=settings.access_token_ttl_minutes),
            REFRESH: timedelta(minutes=settings.refresh_token_ttl_minutes),
        }
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=30)

    def issue(self, user: User) -> TokenPair:
        now = int(time.time())
        access_ttl = int(self._ttl[ACCESS].total_seconds())
        access_payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "role": user.role,
            "plan": user.plan,
            "tkv": user.token_epoch,
            "token_type": ACCESS,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + access_ttl,
        }
        refresh_payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "tkv": user.token_epoch,
            "token_type": REFRESH,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + int(self._ttl[REFRESH].total_seconds()),
        }
        return TokenPair(
            access_token=self._encode_jwt(access_payload, ACCESS),
            refresh_token=self._encode_jwt(refresh_payload, REFRESH),
            expires_in=access_ttl,
        )

    def verify_access(self, token: str) -> dict[str, Any]:
        return self._verify(token, ACCESS)

    def verify_refresh(self, token: str) -> dict[str, Any]:
        return self._verify(token, REFRESH)

    @staticmethod
    def epoch_matches(claims: dict[str, Any], user: User) -> bool:
        epoch = claims.get("tkv")
        return isinstance(epoch, int) and not isinstance(epoch, bool) and epoch == user.token_epoch

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    def _verify(self, token: str, token_type: str) -> dict[str, Any]:
        payload = self._decode_jwt(token, token_type)
        if payload is None:
            raise InvalidTokenError(f"Invalid {token_type} token")
        return payload

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, token_type: str) -> str:
        return self._encode_segment(
            hmac.new(
                self._secrets[token_type], signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], token_type: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, token_type)}"

    def _decode_jwt(self, token: str, token_type: str) -> Optional[dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
            if not isinstance(header, dict) or header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm", token_type=token_type)
                return None
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed", token_type=token_type)
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._sign(signing_input, token_type), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("token_type") != token_type:
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        if not payload.get("sub"):
            return None
        exp = payload.get("exp")
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload
