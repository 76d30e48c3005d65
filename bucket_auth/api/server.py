from __future__ import annotations

import time
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from bucket_auth.auth import get_current_user, get_token_claims, require_admin
from bucket_auth.auth.credentials import bootstrap_admin_if_needed, change_password, check_credentials
from bucket_auth.auth.deps import get_directory
from bucket_auth.auth.tokens import TOKEN_CACHE, issue_token
from bucket_auth.config import Config, load_config
from bucket_auth.directory.records import public_user
from bucket_auth.directory.service import DEFAULT_PAGE_SIZE, DirectoryService
from bucket_auth.errors import DirectoryError, NotFoundError, StorageError, ValidationError
from bucket_auth.storage import open_store
from bucket_auth.util.time import utcnow_iso


def _debug(msg: str) -> None:
    print(f"[api] {msg}")


cfg: Config = load_config()
app = FastAPI(title="Bucket Auth API", version=cfg.APP_VERSION)


@app.on_event("startup")
def _on_startup() -> None:
    # Make config and the directory available to auth deps.
    app.state.cfg = cfg
    TOKEN_CACHE.max_entries = max(1, int(cfg.AUTH_TOKEN_CACHE_MAX_ENTRIES))

    app.state.directory = None
    try:
        directory = DirectoryService.from_config(cfg, open_store(cfg.STORE_DSN, cfg))
        app.state.directory = directory
        directory.ensure_storage()
        _debug("User storage initialized")
    except StorageError as e:
        # Keep serving; /health reports the storage state.
        _debug(f"Storage initialization error: {e}; starting without verified storage")
        return

    try:
        boot = bootstrap_admin_if_needed(cfg, directory)
    except DirectoryError as e:
        _debug(f"Admin bootstrap failed: {e}")
        return
    if boot:
        _debug(f"Bootstrapped initial admin user: username={boot.get('username')} role={boot.get('role')}")


@app.middleware("http")
async def _timing(request: Request, call_next: Any) -> Any:
    start = time.perf_counter()
    response = await call_next(request)
    _debug(f"{request.method} {request.url.path} {response.status_code} - {int((time.perf_counter() - start) * 1000)}ms")
    return response


@app.exception_handler(DirectoryError)
async def _directory_error(request: Request, exc: DirectoryError) -> JSONResponse:
    message = exc.message
    if isinstance(exc, StorageError):
        # Never leak backend details to clients.
        _debug(f"{request.method} {request.url.path} storage error: {exc}")
        message = "Storage backend error"
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "message": message},
        headers=headers,
    )


# -----------------------------
# Health
# -----------------------------


@app.get("/health")
def health(request: Request) -> Dict[str, Any]:
    storage = "connected"
    try:
        get_directory(request).check_storage()
    except StorageError as e:
        storage = "disconnected"
        _debug(f"Storage health check error: {e}")
    return {"status": "healthy", "version": cfg.APP_VERSION, "storage": storage}


# -----------------------------
# Auth
# -----------------------------


# Fields are optional so missing input is reported as 400 (not FastAPI's 422).
class RegisterRequest(BaseModel):
    username: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None


class LoginRequest(BaseModel):
    """`username` accepts either the username or the email."""

    username: Optional[str] = None
    password: Optional[str] = None


class ChangePasswordRequest(BaseModel):
    currentPassword: Optional[str] = None
    newPassword: Optional[str] = None


@app.post("/api/auth/register", status_code=201)
def auth_register(payload: RegisterRequest, request: Request) -> Dict[str, Any]:
    u = get_directory(request).register(payload.username, payload.email, payload.password, role="user")
    return {
        "success": True,
        "message": "User registered successfully",
        "user": {"id": u["id"], "username": u["username"], "email": u["email"]},
    }


@app.post("/api/auth/login")
def auth_login(payload: LoginRequest, request: Request) -> Dict[str, Any]:
    if not payload.username or not payload.password:
        raise ValidationError("Username and password are required", detail="missing_credentials")

    user = check_credentials(
        get_directory(request),
        payload.username,
        payload.password,
        reveal_inactive=bool(cfg.AUTH_REVEAL_INACTIVE),
    )
    token = issue_token(
        user,
        secret=cfg.AUTH_JWT_SECRET,
        expires_minutes=int(cfg.AUTH_TOKEN_EXPIRE_MINUTES),
    )
    return {
        "token": token,
        "expiresIn": cfg.token_expires_in_seconds,
        "tokenType": "Bearer",
        "user": {"id": user["id"], "username": user["username"], "role": user["role"]},
    }


@app.get("/api/auth/profile")
def auth_profile(request: Request, claims: Dict[str, Any] = Depends(get_token_claims)) -> Dict[str, Any]:
    record = get_directory(request).get_by_id(str(claims.get("sub") or ""))
    if record is None:
        raise NotFoundError("User no longer exists")
    return public_user(record)


@app.post("/api/auth/change-password")
def auth_change_password(
    payload: ChangePasswordRequest,
    request: Request,
    claims: Dict[str, Any] = Depends(get_token_claims),
) -> Dict[str, Any]:
    change_password(
        get_directory(request),
        str(claims.get("sub") or ""),
        payload.currentPassword,
        payload.newPassword,
    )
    return {"success": True, "message": "Password changed successfully"}


# -----------------------------
# Protected examples
# -----------------------------


def _principal_view(user: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": user.get("id"), "username": user.get("username"), "role": user.get("role")}


@app.get("/api/protected")
def protected(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    return {"message": "Access granted", "user": _principal_view(user), "timestamp": utcnow_iso()}


@app.get("/api/admin")
def admin_only(user: Dict[str, Any] = Depends(require_admin)) -> Dict[str, Any]:
    return {"message": "Admin access granted", "user": _principal_view(user), "timestamp": utcnow_iso()}


# -----------------------------
# Admin: user management
# -----------------------------


class CreateUserRequest(BaseModel):
    username: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    role: str = "user"  # admin|user


class UpdateUserRequest(BaseModel):
    username: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    active: Optional[bool] = None


@app.get("/api/users")
def admin_list_users(
    request: Request,
    limit: Optional[str] = Query(None),
    marker: Optional[str] = Query(None),
    _admin: Dict[str, Any] = Depends(require_admin),
) -> Dict[str, Any]:
    # Parsed here so bad values answer 400 like every other validation error.
    n = DEFAULT_PAGE_SIZE
    if limit is not None and limit.strip():
        try:
            n = int(limit)
        except ValueError:
            raise ValidationError("limit must be a positive integer", detail="invalid_limit")
    page = get_directory(request).list_users(limit=n, marker=marker or None)
    return {"users": page.users, "nextMarker": page.next_marker}


@app.post("/api/users", status_code=201)
def admin_create_user(
    payload: CreateUserRequest,
    request: Request,
    _admin: Dict[str, Any] = Depends(require_admin),
) -> Dict[str, Any]:
    u = get_directory(request).register(payload.username, payload.email, payload.password, role=payload.role)
    return {"user": u}


@app.patch("/api/users/{user_id}")
def admin_update_user(
    user_id: str,
    payload: UpdateUserRequest,
    request: Request,
    _admin: Dict[str, Any] = Depends(require_admin),
) -> Dict[str, Any]:
    fields = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}
    if not fields:
        raise ValidationError("No updatable fields supplied", detail="empty_update")
    u = get_directory(request).update(user_id, fields)
    return {"user": u}


@app.delete("/api/users/{user_id}")
def admin_delete_user(
    user_id: str,
    request: Request,
    _admin: Dict[str, Any] = Depends(require_admin),
) -> Dict[str, Any]:
    get_directory(request).delete(user_id)
    return {"success": True}
