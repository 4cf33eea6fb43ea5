import base64
import hashlib
import hmac
import json
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import HTTPException
from jose import jwt
from jose.exceptions import JWTError
from starlette.requests import Request


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(data: str) -> bytes:
    s = str(data or "")
    pad = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode((s + pad).encode("ascii"))


def _now_ts() -> int:
    return int(time.time())


@dataclass
class UserPrincipal:
    user_id: str
    email: Optional[str] = None
    expires_at: Optional[int] = None


class AuthConfig:
    def __init__(self) -> None:
        self.cookie_secret = str(os.getenv("AUTH_COOKIE_SECRET", "")).strip()
        self.jwt_secret = str(os.getenv("AUTH_JWT_SECRET", "")).strip()
        self.jwt_audience = str(os.getenv("AUTH_JWT_AUDIENCE", "")).strip() or None
        self.dev_user_id = str(os.getenv("AUTH_DEV_USER_ID", "")).strip()


class AuthService:
    SESSION_COOKIE_NAME = "rs_session"
    JWT_ALGORITHMS = ["HS256"]

    def __init__(self, cfg: AuthConfig) -> None:
        self.cfg = cfg

    def _sign_blob(self, payload_b64: str) -> str:
        sig = hmac.new(
            self.cfg.cookie_secret.encode("utf-8"),
            payload_b64.encode("utf-8"),
            hashlib.sha256,
        ).digest()
        return _b64url_encode(sig)

    def sign_json(self, payload: Dict[str, Any]) -> str:
        if not self.cfg.cookie_secret:
            raise HTTPException(status_code=500, detail="Session cookies are not configured.")
        raw = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        b64 = _b64url_encode(raw)
        return f"{b64}.{self._sign_blob(b64)}"

    def verify_json(self, token: str) -> Optional[Dict[str, Any]]:
        if not self.cfg.cookie_secret:
            return None
        try:
            parts = str(token or "").split(".")
            if len(parts) != 2:
                return None
            b64, sig = parts
            expected = self._sign_blob(b64)
            if not hmac.compare_digest(sig, expected):
                return None
            payload = json.loads(_b64url_decode(b64).decode("utf-8"))
            return payload if isinstance(payload, dict) else None
        except (ValueError, UnicodeDecodeError):
            return None

    # Cookies are issued by the host application's sign-in flow, which signs
    # the same {user_id, email, iat, exp} payload with AUTH_COOKIE_SECRET.
    def parse_session_cookie(self, token: str) -> Optional[UserPrincipal]:
        payload = self.verify_json(token)
        if not payload:
            return None
        user_id = str(payload.get("user_id", "")).strip()
        if not user_id:
            return None
        exp = int(payload.get("exp", 0) or 0)
        if exp < _now_ts():
            return None
        email = str(payload.get("email", "")).strip() or None
        return UserPrincipal(user_id=user_id, email=email, expires_at=exp)

    def parse_bearer_token(self, token: str) -> Optional[UserPrincipal]:
        if not self.cfg.jwt_secret:
            return None
        options = {"verify_aud": self.cfg.jwt_audience is not None}
        try:
            claims = jwt.decode(
                token,
                self.cfg.jwt_secret,
                algorithms=self.JWT_ALGORITHMS,
                audience=self.cfg.jwt_audience,
                options=options,
            )
        except JWTError:
            return None
        user_id = str(claims.get("sub", "")).strip()
        if not user_id:
            return None
        email = str(claims.get("email", "")).strip() or None
        exp = claims.get("exp")
        return UserPrincipal(user_id=user_id, email=email, expires_at=int(exp) if exp else None)


def get_current_user_from_request(request: Request, auth: AuthService) -> Optional[UserPrincipal]:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return auth.parse_bearer_token(token.strip())
    raw = request.cookies.get(AuthService.SESSION_COOKIE_NAME, "")
    if raw:
        return auth.parse_session_cookie(raw)
    if auth.cfg.dev_user_id:
        return UserPrincipal(user_id=auth.cfg.dev_user_id)
    return None
