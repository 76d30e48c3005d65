from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional

from bucket_auth.directory.records import public_user
from bucket_auth.errors import AuthError, NotFoundError, ValidationError

from .security import hash_password, verify_password

if TYPE_CHECKING:
    from bucket_auth.directory.service import DirectoryService


INVALID_CREDENTIALS = "Invalid credentials"
ACCOUNT_DISABLED = "Account is disabled"

_dummy_hashes: Dict[int, str] = {}


def _dummy_hash(rounds: int | None) -> str:
    # Unknown users still pay for one hash check so response time does not
    # reveal whether the identifier exists.
    key = int(rounds or 0)
    if key not in _dummy_hashes:
        _dummy_hashes[key] = hash_password("not-a-real-password", rounds=rounds)
    return _dummy_hashes[key]


@dataclass(frozen=True)
class AuthResult:
    success: bool
    user: Optional[Dict[str, Any]] = None
    # Client-facing message on failure.
    message: Optional[str] = None
    # Internal reason on failure: no_such_user | account_inactive | wrong_password
    reason: Optional[str] = None


def authenticate(
    directory: "DirectoryService",
    identifier: str | None,
    password: str | None,
    *,
    reveal_inactive: bool = True,
) -> AuthResult:
    """Check a username-or-email + password pair.

    Unknown user and wrong password both answer "Invalid credentials".
    Inactive accounts answer "Account is disabled" unless `reveal_inactive`
    is False.
    """
    record = directory.find_record_by_identifier(identifier)
    if record is None:
        verify_password(password or "", _dummy_hash(directory.hash_rounds))
        return AuthResult(success=False, message=INVALID_CREDENTIALS, reason="no_such_user")

    if not record.get("active", True):
        msg = ACCOUNT_DISABLED if reveal_inactive else INVALID_CREDENTIALS
        return AuthResult(success=False, message=msg, reason="account_inactive")

    if not verify_password(password or "", str(record.get("password_hash") or "")):
        return AuthResult(success=False, message=INVALID_CREDENTIALS, reason="wrong_password")

    return AuthResult(success=True, user=public_user(record))


def check_credentials(
    directory: "DirectoryService",
    identifier: str | None,
    password: str | None,
    *,
    reveal_inactive: bool = True,
) -> Dict[str, Any]:
    """`authenticate`, raising AuthError on failure. Returns the public user view."""
    result = authenticate(directory, identifier, password, reveal_inactive=reveal_inactive)
    if not result.success or result.user is None:
        detail = "account_disabled" if result.message == ACCOUNT_DISABLED else "invalid_credentials"
        raise AuthError(result.message or INVALID_CREDENTIALS, detail=detail)
    return result.user


def basic_auth(
    directory: "DirectoryService",
    username: str | None,
    password: str | None,
    *,
    reveal_inactive: bool = True,
) -> Optional[Dict[str, Any]]:
    result = authenticate(directory, username, password, reveal_inactive=reveal_inactive)
    return result.user if result.success else None


def change_password(
    directory: "DirectoryService",
    user_id: str,
    current_password: str | None,
    new_password: str | None,
) -> None:
    if not current_password or not new_password:
        raise ValidationError(
            "Current password and new password are required",
            detail="missing_fields",
        )
    directory.validate_password(new_password)

    record = directory.get_by_id(user_id)
    if record is None:
        raise NotFoundError("User no longer exists")

    if not verify_password(current_password, str(record.get("password_hash") or "")):
        raise AuthError("Current password is incorrect", detail="invalid_password")

    directory.update(user_id, {"password_hash": hash_password(new_password, rounds=directory.hash_rounds)})


def bootstrap_admin_if_needed(cfg: Any, directory: "DirectoryService") -> Optional[Dict[str, Any]]:
    """Create the first admin user if the directory is empty.

    Controlled via environment variables so a fresh bucket has a deterministic way to log in.

    - AUTH_BOOTSTRAP_ADMIN_USERNAME (default: admin)
    - AUTH_BOOTSTRAP_ADMIN_EMAIL (default: admin@example.com)
    - AUTH_BOOTSTRAP_ADMIN_PASSWORD (no default: nothing is created without it)
    """

    username = (getattr(cfg, "AUTH_BOOTSTRAP_ADMIN_USERNAME", "") or "").strip()
    email = (getattr(cfg, "AUTH_BOOTSTRAP_ADMIN_EMAIL", "") or "").strip()
    password = getattr(cfg, "AUTH_BOOTSTRAP_ADMIN_PASSWORD", None)
    if not username or not email or not password:
        return None

    if directory.has_users():
        return None

    return directory.register(username, email, password, role="admin")
