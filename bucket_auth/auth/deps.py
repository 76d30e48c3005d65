from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBasic, HTTPBasicCredentials, HTTPBearer

from bucket_auth.errors import AuthError, AuthorizationError, StorageError

from .credentials import basic_auth
from .tokens import verify_token

if TYPE_CHECKING:
    from bucket_auth.directory.service import DirectoryService


_bearer = HTTPBearer(auto_error=False)
_basic = HTTPBasic(auto_error=False)


def get_config(request: Request) -> Any:
    cfg = getattr(request.app.state, "cfg", None)
    if cfg is None:
        raise StorageError("Server configuration missing", detail="server_config_missing")
    return cfg


def get_directory(request: Request) -> "DirectoryService":
    directory = getattr(request.app.state, "directory", None)
    if directory is None:
        raise StorageError("User directory not initialized", detail="directory_unavailable")
    return directory


def _principal_from_claims(claims: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": claims.get("sub"),
        "username": claims.get("username"),
        "email": claims.get("email"),
        "role": claims.get("role") or "user",
        "exp": claims.get("exp"),
    }


def get_token_claims(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
) -> Dict[str, Any]:
    """Bearer-only authentication. Returns the verified token claims."""
    if credentials is None or not credentials.credentials:
        raise AuthError("Authentication required", detail="missing_token")

    cfg = get_config(request)
    result = verify_token(credentials.credentials, secret=cfg.AUTH_JWT_SECRET)
    if not result.success or result.claims is None:
        raise AuthError(result.message or "Invalid token", detail=result.reason or "token_invalid")
    return result.claims


def get_current_user(
    request: Request,
    bearer: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    basic: Optional[HTTPBasicCredentials] = Depends(_basic),
) -> Dict[str, Any]:
    """Authenticate a request.

    Supports both:
      - Authorization: Bearer <jwt>   (claims are trusted; no storage read)
      - Authorization: Basic <b64>    (checked against the directory)
    """
    header = (request.headers.get("Authorization") or "").strip()
    if not header:
        raise AuthError("Authorization header required", detail="authorization_required")

    if bearer is not None:
        claims = get_token_claims(request, bearer)
        return _principal_from_claims(claims)

    if basic is not None:
        cfg = get_config(request)
        user = basic_auth(
            get_directory(request),
            basic.username,
            basic.password,
            reveal_inactive=bool(cfg.AUTH_REVEAL_INACTIVE),
        )
        if user is None:
            raise AuthError("Invalid credentials", detail="invalid_credentials")
        return {
            "id": user.get("id"),
            "username": user.get("username"),
            "email": user.get("email"),
            "role": user.get("role") or "user",
        }

    raise AuthError("Unsupported authorization method", detail="unsupported_authorization")


def require_role(*roles: str) -> Callable[..., Dict[str, Any]]:
    allowed = tuple(roles)

    def _dep(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
        if (user.get("role") or "user") not in allowed:
            raise AuthorizationError("Forbidden: Insufficient permissions", detail="insufficient_role")
        return user

    return _dep


require_admin = require_role("admin")
