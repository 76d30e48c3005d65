"""Authentication / authorization helpers.

Kept deliberately small:

- Users live in the bucket-backed directory (username + email + password hash + role)
- JWT access tokens, verified statelessly (plus an in-process verification cache)

The API supports both:

- `Authorization: Bearer <token>` (issued by `/api/auth/login`)
- `Authorization: Basic <base64>` on the generic protected routes
"""

from .deps import get_current_user, get_token_claims, require_admin, require_role
from .credentials import authenticate, bootstrap_admin_if_needed, change_password

__all__ = [
    "get_current_user",
    "get_token_claims",
    "require_admin",
    "require_role",
    "authenticate",
    "bootstrap_admin_if_needed",
    "change_password",
]
