from __future__ import annotations

import base64
import json
from functools import lru_cache
from typing import Any, Dict, Optional

import jwt
import requests
from fastapi import HTTPException, Request

from billsync.core import settings as settings_mod


def _settings():
    return settings_mod.S


def cognito_issuer(settings=None) -> str:
    s = settings or _settings()
    region = s.cognito_region or s.aws_region
    return f"https://cognito-idp.{region}.amazonaws.com/{s.cognito_user_pool_id}"


@lru_cache(maxsize=4)
def fetch_jwks(issuer: str) -> Dict[str, Any]:
    resp = requests.get(f"{issuer}/.well-known/jwks.json", timeout=10)
    resp.raise_for_status()
    return resp.json()


def _signing_key(issuer: str, kid: str):
    for key in fetch_jwks(issuer).get("keys", []):
        if key.get("kid") == kid:
            return jwt.algorithms.RSAAlgorithm.from_jwk(json.dumps(key))
    raise HTTPException(401, "Unknown signing key")


def verify_cognito_token(token: str, settings=None) -> Dict[str, Any]:
    """Validate a Cognito-issued JWT and return its claims.

    ``aud`` is only checked on id tokens; Cognito access tokens carry the app
    client in ``client_id`` instead.
    """
    s = settings or _settings()
    issuer = cognito_issuer(s)
    try:
        header = jwt.get_unverified_header(token)
    except jwt.PyJWTError as exc:
        raise HTTPException(401, "Invalid token header") from exc

    key = _signing_key(issuer, header.get("kid", ""))
    expected_use = s.cognito_expected_token_use
    try:
        claims = jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            issuer=issuer,
            audience=s.cognito_app_client_id if expected_use == "id" else None,
            options={"verify_aud": expected_use == "id"},
        )
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(401, "Token expired") from exc
    except jwt.PyJWTError as exc:
        raise HTTPException(401, "Invalid token") from exc

    if expected_use and claims.get("token_use") != expected_use:
        raise HTTPException(401, "Unexpected token use")
    if expected_use == "access" and claims.get("client_id") != s.cognito_app_client_id:
        raise HTTPException(401, "Token issued for another client")
    return claims


def unverified_sub(token: str) -> Optional[str]:
    parts = token.split(".")
    if len(parts) != 3 or not parts[1]:
        return None
    try:
        data = json.loads(base64.urlsafe_b64decode(parts[1] + "=" * (-len(parts[1]) % 4)))
    except (ValueError, UnicodeDecodeError):
        return None
    sub = data.get("sub") if isinstance(data, dict) else None
    return sub if isinstance(sub, str) and sub.strip() else None


def bearer_token(request: Request) -> str:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(401, "Missing bearer token")
    return token.strip()


async def get_authenticated_user_sub(request: Request) -> str:
    """Return the directory user id of the caller.

    With a Cognito app client configured the bearer token must verify.
    Otherwise (local development) ``Authorization: Bearer <user id>`` is
    trusted as is.
    """
    s = _settings()
    token = bearer_token(request)
    if s.cognito_user_pool_id and s.cognito_app_client_id:
        claims = verify_cognito_token(token, s)
        sub = claims.get("sub") or claims.get("username")
        if not sub:
            raise HTTPException(401, "Token missing subject")
        return str(sub)
    return unverified_sub(token) or token
