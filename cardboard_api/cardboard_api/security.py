"""Bearer token issue and validation.

Tokens have the form ``cb1.{urlsafe_b64(payload_json)}.{hmac_sha256_hex}``
where the signature covers the raw payload JSON.  The identity provider
(or the dev CLI) mints them; the API only validates.

Payload claims::

    sub    -- user id; also the tenant id (one tenant per user)
    email  -- account email, used to link Stripe customers
    iat    -- issued-at (epoch seconds)
    exp    -- expiry (epoch seconds)
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from typing import Any

from pydantic import BaseModel, SecretStr, ValidationError

TOKEN_PREFIX = "cb1"
DEFAULT_TTL_SECONDS = 3600


class TokenClaims(BaseModel):
    """Validated token payload."""

    sub: str
    email: str | None = None
    iat: float
    exp: float

    @property
    def tenant_id(self) -> str:
        return self.sub


class TokenManager:
    """HMAC-SHA256 token signer/validator.

    Parameters
    ----------
    secret:
        Shared signing secret.
    leeway_seconds:
        Clock skew tolerated when checking ``exp``.
    """

    def __init__(self, secret: SecretStr | str, leeway_seconds: int = 30) -> None:
        raw = secret.get_secret_value() if isinstance(secret, SecretStr) else secret
        if not raw:
            raise ValueError("Token secret must not be empty")
        self._key = raw.encode("utf-8")
        self._leeway = leeway_seconds

    def _sign(self, payload_json: str) -> str:
        return hmac.new(self._key, payload_json.encode("utf-8"), hashlib.sha256).hexdigest()

    def generate_token(
        self,
        sub: str,
        email: str | None = None,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ) -> str:
        now = time.time()
        payload: dict[str, Any] = {"sub": sub, "email": email, "iat": now, "exp": now + ttl_seconds}
        payload_json = json.dumps(payload)
        encoded = base64.urlsafe_b64encode(payload_json.encode("utf-8")).decode("ascii")
        return f"{TOKEN_PREFIX}.{encoded}.{self._sign(payload_json)}"

    def validate_token(self, token: str) -> TokenClaims:
        """Verify signature and expiry.

        Raises
        ------
        PermissionError
            If the token is malformed, forged or expired.
        """
        parts = token.split(".")
        if len(parts) != 3 or parts[0] != TOKEN_PREFIX:
            raise PermissionError("Malformed token")

        try:
            payload_json = base64.urlsafe_b64decode(parts[1].encode("ascii")).decode("utf-8")
        except (binascii.Error, UnicodeError, ValueError) as exc:
            raise PermissionError("Malformed token payload") from exc

        if not hmac.compare_digest(self._sign(payload_json), parts[2]):
            raise PermissionError("Signature mismatch")

        try:
            claims = TokenClaims.model_validate_json(payload_json)
        except ValidationError as exc:
            raise PermissionError("Invalid token claims") from exc

        if claims.exp + self._leeway < time.time():
            raise PermissionError("Token has expired")
        return claims
