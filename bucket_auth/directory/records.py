from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from bucket_auth.errors import StorageError
from bucket_auth.storage import ObjectNotFound, ObjectStore

USERS_PREFIX = "users/"
_SUFFIX = ".json"


def record_key(user_id: str) -> str:
    return f"{USERS_PREFIX}{user_id}{_SUFFIX}"


def user_id_from_key(key: str) -> str | None:
    if not key.startswith(USERS_PREFIX) or not key.endswith(_SUFFIX):
        return None
    uid = key[len(USERS_PREFIX) : -len(_SUFFIX)]
    return uid or None


def public_user(record: Dict[str, Any]) -> Dict[str, Any]:
    d = dict(record)
    d.pop("password_hash", None)
    return d


@dataclass(frozen=True)
class IdPage:
    ids: List[str]
    next_marker: str | None


class UserRecordStore:
    """One JSON object per user, keyed by id. Authoritative copy of each user."""

    def __init__(self, store: ObjectStore):
        self.store = store

    def get_by_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        uid = user_id or ""
        # Ids are used verbatim as key segments; padded ids never match a record.
        if not uid or uid != uid.strip() or "/" in uid:
            return None
        try:
            data, _etag = self.store.get_json(record_key(uid))
        except ObjectNotFound:
            return None
        if not isinstance(data, dict):
            raise StorageError(f"User record {uid} is not a JSON object", detail="malformed_record")
        return data

    def put(self, user_id: str, record: Dict[str, Any]) -> None:
        """Full overwrite."""
        self.store.put_json(record_key(user_id), record)

    def delete(self, user_id: str) -> None:
        self.store.delete(record_key(user_id))

    def list_ids(self, limit: int = 100, marker: str | None = None) -> IdPage:
        """Enumerate ids by prefix scan.

        Order is the backend's lexicographic key order (id-derived, not insertion order).
        The marker is the raw key cursor returned by the backend.
        """
        page = self.store.list(USERS_PREFIX, limit=limit, marker=marker)
        ids = [uid for uid in (user_id_from_key(k) for k in page.keys) if uid]
        return IdPage(ids=ids, next_marker=page.next_marker)
