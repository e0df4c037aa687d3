import base64
import json
import logging
import re
from typing import Any, Dict, Mapping, Optional

from fastapi import Header, Request
from jwt import (
    decode as jwt_decode,
    PyJWKClient,
    InvalidTokenError,
    get_unverified_header,
)

from parkspot.core.config import Settings
from parkspot.core.errors import Unauthorized

log = logging.getLogger(__name__)

# Supabase SSR session cookie, optionally split into ".0", ".1", ... chunks
_SESSION_COOKIE = re.compile(r"^sb-[A-Za-z0-9_-]+-auth-token(?:\.(\d+))?$")


def _access_token_from_cookie_value(raw: str) -> Optional[str]:
    value = raw.strip()
    if value.startswith("base64-"):
        padded = value[len("base64-"):]
        padded += "=" * (-len(padded) % 4)
        try:
            value = base64.urlsafe_b64decode(padded).decode("utf-8")
        except ValueError:
            return None
    try:
        parsed = json.loads(value)
    except ValueError:
        return None
    if isinstance(parsed, dict):
        token = parsed.get("access_token")
        return token if isinstance(token, str) and token else None
    # Older helpers stored [access_token, refresh_token, ...]
    if isinstance(parsed, list) and parsed and isinstance(parsed[0], str):
        return parsed[0]
    return None


def token_from_cookies(cookies: Mapping[str, str]) -> Optional[str]:
    if "sb-access-token" in cookies:
        return cookies["sb-access-token"] or None
    chunks: Dict[int, str] = {}
    for name, value in cookies.items():
        m = _SESSION_COOKIE.match(name)
        if m:
            chunks[int(m.group(1) or 0)] = value
    if not chunks:
        return None
    return _access_token_from_cookie_value("".join(chunks[i] for i in sorted(chunks)))


class SupabaseAuthenticator:
    """Verify Supabase access tokens (HS256 shared secret or RS256 via JWKS)."""

    def __init__(self, cfg: Settings):
        self.jwt_secret = cfg.SUPABASE_JWT_SECRET
        self.issuer = cfg.SUPABASE_ISS
        self._jwk_client: Optional[PyJWKClient] = (
            PyJWKClient(cfg.SUPABASE_JWT_JWKS_URL) if cfg.SUPABASE_JWT_JWKS_URL else None
        )
        if not (self._jwk_client or self.jwt_secret):
            log.warning(
                "Neither SUPABASE_JWT_JWKS_URL nor SUPABASE_JWT_SECRET set; "
                "authenticated routes will return 401 until configured."
            )

    def verify_token(self, token: Optional[str]) -> Dict[str, Any]:
        if not token:
            raise InvalidTokenError("Missing access token")
        try:
            header = get_unverified_header(token)
        except Exception as e:
            raise InvalidTokenError("Invalid JWT header") from e

        alg = header.get("alg")

        # RS256 via JWKS (newer Supabase projects)
        if alg == "RS256":
            if not self._jwk_client:
                raise InvalidTokenError("JWKS client not configured")
            signing_key = self._jwk_client.get_signing_key_from_jwt(token).key
            claims = jwt_decode(
                token, signing_key, algorithms=["RS256"], options={"verify_aud": False}
            )
        # HS256 via shared secret (many existing Supabase projects)
        elif alg == "HS256":
            if not self.jwt_secret:
                raise InvalidTokenError("HS256 token but SUPABASE_JWT_SECRET not set")
            claims = jwt_decode(
                token,
                self.jwt_secret,
                algorithms=["HS256"],
                options={"verify_aud": False},
            )
        else:
            raise InvalidTokenError(f"Unsupported alg: {alg}")

        if self.issuer and claims.get("iss") != self.issuer:
            raise InvalidTokenError("Invalid issuer")
        if not claims.get("sub"):
            raise InvalidTokenError("Token has no subject")
        return claims

    def authenticate(self, authorization: Optional[str], cookies: Mapping[str, str]) -> Dict[str, Any]:
        token: Optional[str] = None
        if authorization and authorization.startswith("Bearer "):
            token = authorization.split(" ", 1)[1].strip()
        if not token:
            token = token_from_cookies(cookies)
        claims = self.verify_token(token)
        return {"user_id": claims["sub"], "email": claims.get("email")}


def get_current_user(request: Request, authorization: Optional[str] = Header(None)):
    """Return minimal user identity from a Supabase JWT or 401.
    Accepts a Bearer token in the Authorization header or the Supabase session cookie.
    """
    authenticator: SupabaseAuthenticator = request.app.state.authenticator
    try:
        return authenticator.authenticate(authorization, request.cookies)
    except Exception:
        # Catch all JWT-related errors (expired/invalid/missing/JWKS issues) as Unauthorized
        raise Unauthorized("Unauthorized")
