"""Username/email -> user id index.

The index is ONE JSON object in the bucket. There is no partial-update
primitive, so every change rewrites the whole blob:

- Without conditional writes, concurrent writers race and the last save
  wins (an earlier writer's entries can be lost).
- With conditional writes, `save` sends the ETag observed by `load` and the
  backend rejects the PUT if the blob changed in between
  (`PreconditionFailed`). Callers reload, re-apply and retry.

Keys are lowercased identifiers. Values are user ids.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict

from bucket_auth.errors import StorageError
from bucket_auth.storage import ObjectNotFound, ObjectStore

INDEX_KEY = "indices/username-email-index.json"


def normalize_identifier(identifier: str | None) -> str:
    return (identifier or "").strip().lower()


@dataclass
class IndexSnapshot:
    entries: Dict[str, str] = field(default_factory=dict)
    # None means the index object did not exist when loaded.
    etag: str | None = None

    def get(self, identifier: str | None) -> str | None:
        key = normalize_identifier(identifier)
        if not key:
            return None
        return self.entries.get(key)


class DirectoryIndex:
    def __init__(self, store: ObjectStore, *, conditional_writes: bool = False, key: str = INDEX_KEY):
        self.store = store
        self.conditional_writes = conditional_writes
        self.key = key

    def load(self) -> IndexSnapshot:
        """Fetch the index. A missing index object is the first-run case, not an error."""
        try:
            data, etag = self.store.get_json(self.key)
        except ObjectNotFound:
            return IndexSnapshot()
        if not isinstance(data, dict):
            raise StorageError("Index object is not a JSON object", detail="malformed_index")
        entries = {str(k): str(v) for k, v in data.items() if v}
        return IndexSnapshot(entries=entries, etag=etag)

    def save(self, snapshot: IndexSnapshot) -> IndexSnapshot:
        """Overwrite the index blob wholesale.

        With conditional writes enabled this raises PreconditionFailed if the
        blob changed since `snapshot` was loaded. Returns a snapshot carrying
        the new ETag so the caller can keep writing.
        """
        if self.conditional_writes:
            etag = self.store.put_json(
                self.key,
                snapshot.entries,
                if_match=snapshot.etag,
                if_none_match=snapshot.etag is None,
            )
        else:
            etag = self.store.put_json(self.key, snapshot.entries)
        return IndexSnapshot(entries=dict(snapshot.entries), etag=etag)

    def initialize(self) -> None:
        """Write an empty index unless one already exists."""
        try:
            self.store.get(self.key)
            return
        except ObjectNotFound:
            pass
        self.save(IndexSnapshot())
