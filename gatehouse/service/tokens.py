from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from gatehouse.logging import get_logger
from gatehouse.service.errors import InvalidTokenError

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    session_id: str
    issued_at: int
    expires_at: int


class TokenCodec:
    """Compact HS256 bearer tokens binding a user to a session.

    Tokens are stateless; the session record they reference is the source
    of truth. Every verification failure surfaces as the same
    ``InvalidTokenError`` and the specific reason is only logged.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str = "gatehouse",
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def mint(self, user_id: str, session_id: str, ttl_seconds: int) -> str:
        now = int(self._clock())
        payload = {
            "sub": user_id,
            "sid": session_id,
            "iat": now,
            "exp": now + int(ttl_seconds),
            "iss": self.issuer,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _reject(self, reason: str, **context: Any) -> InvalidTokenError:
        logger.info("token_rejected", reason=reason, **context)
        return InvalidTokenError()

    def verify(self, token: Optional[str]) -> TokenClaims:
        if not token or not isinstance(token, str):
            raise self._reject("missing")
        if not token.isascii():
            raise self._reject("malformed")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise self._reject("malformed") from None

        # Pin the algorithm so a forged header cannot downgrade verification
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise self._reject("header_decode_failed") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise self._reject("bad_algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise self._reject("bad_signature")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise self._reject("payload_decode_failed") from None
        if not isinstance(payload, dict):
            raise self._reject("payload_not_object")
        if payload.get("iss") != self.issuer:
            raise self._reject("bad_issuer")

        user_id = payload.get("sub")
        session_id = payload.get("sid")
        exp = payload.get("exp")
        iat = payload.get("iat", 0)
        if not isinstance(user_id, str) or not isinstance(session_id, str):
            raise self._reject("missing_subject")
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            raise self._reject("missing_expiry")
        if exp + self.leeway_seconds <= self._clock():
            raise self._reject("expired", session_id=session_id)
        return TokenClaims(
            user_id=user_id,
            session_id=session_id,
            issued_at=int(iat) if isinstance(iat, (int, float)) else 0,
            expires_at=int(exp),
        )
