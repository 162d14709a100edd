from __future__ import annotations
import logging
from typing import Any, Dict

import bcrypt
from fastapi import Request, Response
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from .config import Settings
from .errors import AuthError, ForbiddenError
from .helpers import ct_equal
from .model import Storage
from .model import logs as log_types

logger = logging.getLogger(__name__)

ADMIN_COOKIE = "admin_token"
ROLE_ADMIN = "admin"
TOKEN_SALT = "keygate.admin-session"


# ----------------------------
# Passwords
# ----------------------------
def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode()


def check_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # not a bcrypt hash
        return False


# ----------------------------
# Session tokens
# ----------------------------
class TokenSigner:
    """Signed, time-boxed {id, username, role} tokens. No revocation."""

    def __init__(self, secret_key: str, ttl_seconds: int) -> None:
        self.ttl = ttl_seconds
        self._serializer = URLSafeTimedSerializer(secret_key, salt=TOKEN_SALT)

    def issue(self, identity: Dict[str, Any]) -> str:
        return self._serializer.dumps({
            "id": identity["id"],
            "username": identity["username"],
            "role": identity["role"],
        })

    def verify(self, token: str) -> Dict[str, Any]:
        try:
            data = self._serializer.loads(token, max_age=self.ttl)
        except SignatureExpired:
            raise AuthError("Admin session expired")
        except BadSignature:
            raise AuthError("Invalid admin token")
        if not isinstance(data, dict) or "username" not in data:
            raise AuthError("Invalid admin token")
        return data


def set_admin_cookie(response: Response, token: str,
                     settings: Settings) -> None:
    response.set_cookie(
        ADMIN_COOKIE,
        token,
        max_age=settings.admin_token_ttl,
        httponly=True,
        samesite="strict",
        secure=settings.cookie_secure,
    )


def clear_admin_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        ADMIN_COOKIE,
        httponly=True,
        samesite="strict",
        secure=settings.cookie_secure,
    )


# ----------------------------
# Login
# ----------------------------
def _check_configured_admin(settings: Settings, username: str,
                            password: str) -> bool:
    ok_user = ct_equal(username, settings.admin_username)
    if settings.admin_password_hash:
        ok_pass = check_password(password, settings.admin_password_hash)
    else:
        ok_pass = ct_equal(password, settings.admin_password)
    return ok_user and ok_pass


async def authenticate(storage: Storage, settings: Settings, username: str,
                       password: str) -> Dict[str, Any]:
    """
    admin_users rows take precedence; the configured admin is the
    fallback. Returns the identity to put in the token.
    """
    username = username.strip()
    async with storage.transaction():
        admin = await storage.admins.get_by_username(username)
        if admin is not None:
            if not admin.is_active:
                logger.warning("login refused for suspended admin %s",
                               username)
                raise AuthError("Invalid credentials")
            if not check_password(password, admin.password_hash):
                logger.warning("bad password for admin %s", username)
                raise AuthError("Invalid credentials")
            await storage.admins.touch_login(admin)
            identity = {
                "id": str(admin.id),
                "username": admin.username,
                "role": ROLE_ADMIN,
            }
        elif _check_configured_admin(settings, username, password):
            identity = {
                "id": "admin",
                "username": settings.admin_username,
                "role": ROLE_ADMIN,
            }
        else:
            logger.warning("bad credentials for %r", username)
            raise AuthError("Invalid credentials")

        await storage.logs.write(
            log_types.ADMIN_LOGIN,
            f"Admin {identity['username']} logged in",
            user_id=identity["username"],
        )
    return identity


# ----------------------------
# Guard (FastAPI dependency)
# ----------------------------
def require_admin(request: Request) -> Dict[str, Any]:
    token = request.cookies.get(ADMIN_COOKIE)
    if not token:
        raise AuthError("Admin authentication required")
    signer: TokenSigner = request.app.state.signer
    identity = signer.verify(token)
    if identity.get("role") != ROLE_ADMIN:
        raise ForbiddenError("Admin access required")
    return identity
