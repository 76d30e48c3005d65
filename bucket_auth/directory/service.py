"""Directory service: a two-constraint user table on top of a flat object store.

Records (`users/<id>.json`) are authoritative; the index blob is derived from
them. The store has single-object put/get/delete only, so record and index
writes are never atomic together. Every mutation therefore follows one rule:

    The index never gains an entry before the record that justifies it is
    written, and loses entries before the record that justified them is
    deleted.

    register: record -> index
    update:   record -> index
    delete:   index  -> record

Lookups check that the resolved record still carries the looked-up
identifier, so whatever a crash between the two writes leaves behind reads
as a miss (an orphan record or a stale index entry), never as the wrong user.
`audit()` / `repair()` reconcile the two afterwards.

Concurrency: requests are not serialized against each other. With
`conditional_writes=False` two racing registrations of the same name can both
pass the uniqueness check and the last index save wins. With
`conditional_writes=True` index saves carry the ETag seen at load time, and a
lost race reloads the index, re-checks uniqueness and retries.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

from bucket_auth.auth.security import hash_password
from bucket_auth.directory.index import DirectoryIndex, IndexSnapshot, normalize_identifier
from bucket_auth.directory.records import UserRecordStore, public_user
from bucket_auth.errors import ConflictError, NotFoundError, StorageError, ValidationError
from bucket_auth.storage import ObjectStore, PreconditionFailed
from bucket_auth.util.time import utcnow_iso

ROLES = ("user", "admin")
DEFAULT_PAGE_SIZE = 100
# S3 ListObjects never returns more than 1000 keys per call.
MAX_PAGE_SIZE = 1000

_IMMUTABLE_FIELDS = ("id", "created_at")


def _debug(msg: str) -> None:
    print(f"[directory] {msg}")


def identifier_keys(record: Dict[str, Any]) -> List[str]:
    """Index keys a record is entitled to (lowercased username and email)."""
    keys: List[str] = []
    for f in ("username", "email"):
        k = normalize_identifier(record.get(f))
        if k and k not in keys:
            keys.append(k)
    return keys


@dataclass(frozen=True)
class UserPage:
    users: List[Dict[str, Any]]
    next_marker: str | None


@dataclass
class AuditReport:
    records: int = 0
    index_entries: int = 0
    # index key -> id with no record behind it
    dangling: Dict[str, str] = field(default_factory=dict)
    # index key -> id whose record no longer carries that identifier
    stale: Dict[str, str] = field(default_factory=dict)
    # record identifier -> id that the index does not map back to that record
    missing: Dict[str, str] = field(default_factory=dict)
    # identifier -> ids of every record claiming it (uniqueness violated)
    duplicates: Dict[str, List[str]] = field(default_factory=dict)
    # ids not reachable through any index entry
    orphans: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.dangling or self.stale or self.missing or self.duplicates or self.orphans)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "records": self.records,
            "index_entries": self.index_entries,
            "dangling": dict(self.dangling),
            "stale": dict(self.stale),
            "missing": dict(self.missing),
            "duplicates": {k: list(v) for k, v in self.duplicates.items()},
            "orphans": list(self.orphans),
        }


class DirectoryService:
    def __init__(
        self,
        store: ObjectStore,
        *,
        conditional_writes: bool = False,
        max_index_retries: int = 5,
        password_min_length: int = 8,
        hash_rounds: int | None = None,
    ):
        self.store = store
        self.index = DirectoryIndex(store, conditional_writes=conditional_writes)
        self.records = UserRecordStore(store)
        self.max_index_retries = max(1, int(max_index_retries))
        self.password_min_length = int(password_min_length)
        self.hash_rounds = hash_rounds

    @classmethod
    def from_config(cls, cfg: Any, store: ObjectStore) -> "DirectoryService":
        return cls(
            store,
            conditional_writes=bool(cfg.DIRECTORY_CONDITIONAL_WRITES),
            max_index_retries=int(cfg.DIRECTORY_INDEX_MAX_RETRIES),
            password_min_length=int(cfg.PASSWORD_MIN_LENGTH),
            hash_rounds=int(cfg.PASSWORD_HASH_ROUNDS),
        )

    # -----------------------------
    # Storage lifecycle
    # -----------------------------

    def ensure_storage(self) -> None:
        """Create the container if absent and make sure an index object exists."""
        self.store.ensure_container()
        self.index.initialize()

    def check_storage(self) -> None:
        """Round-trip to the backend; raises StorageError when unreachable."""
        self.index.load()

    # -----------------------------
    # Validation helpers
    # -----------------------------

    def validate_password(self, password: str | None) -> str:
        pw = password or ""
        if len(pw) < self.password_min_length:
            raise ValidationError(
                f"Password must be at least {self.password_min_length} characters long",
                detail="password_too_short",
            )
        return pw

    @staticmethod
    def _validate_role(role: str | None) -> str:
        r = (role or "").strip().lower()
        if r not in ROLES:
            raise ValidationError(f"Invalid role: {role!r}. Must be one of {', '.join(ROLES)}.", detail="invalid_role")
        return r

    # -----------------------------
    # Index mutation with optional optimistic concurrency
    # -----------------------------

    def _mutate_index(self, apply: Callable[[Dict[str, str]], bool]) -> IndexSnapshot:
        """Load the index, let `apply` edit entries in place, save.

        `apply` returns False when it made no change (nothing is written) and
        may raise ConflictError. On a lost conditional write the whole
        load/apply/save cycle is repeated, so uniqueness is re-checked against
        the winner's entries.
        """
        attempts = self.max_index_retries if self.index.conditional_writes else 1
        for attempt in range(1, attempts + 1):
            snap = self.index.load()
            if apply(snap.entries) is False:
                return snap
            try:
                return self.index.save(snap)
            except PreconditionFailed:
                _debug(f"Index changed concurrently (attempt {attempt}/{attempts}); reloading")
                if attempt >= attempts:
                    raise
        raise PreconditionFailed("Index update retries exhausted")

    # -----------------------------
    # Reads
    # -----------------------------

    def get_by_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Full record (password hash included) or None."""
        return self.records.get_by_id(user_id)

    def find_record_by_identifier(self, identifier: str | None) -> Optional[Dict[str, Any]]:
        """Resolve username or email (any case) to the full record.

        An index entry whose id has no record, or whose record no longer
        carries this identifier, is a miss rather than an error.
        """
        key = normalize_identifier(identifier)
        if not key:
            return None
        user_id = self.index.load().entries.get(key)
        if not user_id:
            return None
        record = self.records.get_by_id(user_id)
        if record is None:
            return None
        if key not in identifier_keys(record):
            return None
        return record

    def find_by_identifier(self, identifier: str | None) -> Optional[Dict[str, Any]]:
        record = self.find_record_by_identifier(identifier)
        return public_user(record) if record is not None else None

    def has_users(self) -> bool:
        return bool(self.records.list_ids(limit=1).ids)

    def list_users(self, limit: int | None = DEFAULT_PAGE_SIZE, marker: str | None = None) -> UserPage:
        """One page of public user views.

        `marker` is the opaque cursor from the previous page (None = first page).
        The returned `next_marker` is None when there are no further pages.
        Records deleted between listing and fetch are skipped.
        """
        n = DEFAULT_PAGE_SIZE if limit is None else int(limit)
        if n < 1:
            raise ValidationError("limit must be a positive integer", detail="invalid_limit")
        n = min(n, MAX_PAGE_SIZE)

        page = self.records.list_ids(limit=n, marker=marker or None)
        users: List[Dict[str, Any]] = []
        for uid in page.ids:
            record = self.records.get_by_id(uid)
            if record is not None:
                users.append(public_user(record))
        return UserPage(users=users, next_marker=page.next_marker)

    def iter_records(self, page_size: int = MAX_PAGE_SIZE) -> Iterator[Dict[str, Any]]:
        marker: str | None = None
        while True:
            page = self.records.list_ids(limit=page_size, marker=marker)
            for uid in page.ids:
                record = self.records.get_by_id(uid)
                if record is not None:
                    yield record
            if not page.next_marker:
                return
            marker = page.next_marker

    # -----------------------------
    # Mutations
    # -----------------------------

    def register(
        self,
        username: str | None,
        email: str | None,
        password: str | None,
        *,
        role: str = "user",
    ) -> Dict[str, Any]:
        u = (username or "").strip()
        e = (email or "").strip().lower()
        if not u or not e or not password:
            raise ValidationError("Username, email, and password are required", detail="missing_fields")
        pw = self.validate_password(password)
        r = self._validate_role(role)

        ukey = normalize_identifier(u)
        ekey = normalize_identifier(e)

        # Fast path: reject obvious duplicates before writing anything.
        snap = self.index.load()
        if snap.get(ukey) or snap.get(ekey):
            raise ConflictError("Username or email already exists")

        user_id = str(uuid.uuid4())
        now = utcnow_iso()
        record: Dict[str, Any] = {
            "id": user_id,
            "username": u,
            "email": e,
            "password_hash": hash_password(pw, rounds=self.hash_rounds),
            "role": r,
            "active": True,
            "created_at": now,
            "updated_at": now,
        }

        # Record first: a crash before the index save leaves an unreachable
        # record, never an index entry pointing at nothing.
        self.records.put(user_id, record)

        def _add(entries: Dict[str, str]) -> bool:
            for k in (ukey, ekey):
                owner = entries.get(k)
                if owner and owner != user_id:
                    raise ConflictError("Username or email already exists")
            entries[ukey] = user_id
            entries[ekey] = user_id
            return True

        try:
            self._mutate_index(_add)
        except ConflictError:
            _debug(f"Registration of {ukey!r} lost a race; removing record {user_id}")
            self._discard_record(user_id)
            raise
        except StorageError as err:
            _debug(
                f"INCONSISTENCY: record {user_id} written but index update failed ({err}); "
                "record is unreachable until repaired"
            )
            raise

        _debug(f"Registered user id={user_id} role={r}")
        return public_user(record)

    def _discard_record(self, user_id: str) -> None:
        try:
            self.records.delete(user_id)
        except StorageError as err:
            _debug(f"INCONSISTENCY: could not remove orphan record {user_id}: {err}")

    def update(self, user_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Shallow-merge `fields` over the record.

        A changed username/email moves only that identifier's index entry.
        `id` and `created_at` are never changed.
        """
        current = self.records.get_by_id(user_id)
        if current is None:
            raise NotFoundError("User not found")

        changes = {k: v for k, v in (fields or {}).items() if k not in _IMMUTABLE_FIELDS}
        if "username" in changes:
            changes["username"] = (changes["username"] or "").strip()
            if not changes["username"]:
                raise ValidationError("Username must not be empty", detail="username_blank")
        if "email" in changes:
            changes["email"] = (changes["email"] or "").strip().lower()
            if not changes["email"]:
                raise ValidationError("Email must not be empty", detail="email_blank")
        if "role" in changes:
            changes["role"] = self._validate_role(changes["role"])
        if "active" in changes:
            changes["active"] = bool(changes["active"])

        updated = {**current, **changes, "updated_at": utcnow_iso()}

        old_keys = identifier_keys(current)
        new_keys = identifier_keys(updated)
        added = [k for k in new_keys if k not in old_keys]
        removed = [k for k in old_keys if k not in new_keys]

        if added:
            snap = self.index.load()
            for k in added:
                owner = snap.entries.get(k)
                if owner and owner != user_id:
                    raise ConflictError("Username or email already exists")

        self.records.put(user_id, updated)

        if not (added or removed):
            return public_user(updated)

        def _move(entries: Dict[str, str]) -> bool:
            for k in added:
                owner = entries.get(k)
                if owner and owner != user_id:
                    raise ConflictError("Username or email already exists")
            for k in removed:
                if entries.get(k) == user_id:
                    del entries[k]
            for k in added:
                entries[k] = user_id
            return True

        try:
            self._mutate_index(_move)
        except ConflictError:
            _debug(f"Update of {user_id} lost a race on {added}; restoring previous record")
            try:
                self.records.put(user_id, current)
            except StorageError as err:
                _debug(f"INCONSISTENCY: could not restore record {user_id}: {err}")
            raise
        except StorageError as err:
            _debug(
                f"INCONSISTENCY: record {user_id} updated but index update failed ({err}); "
                f"new identifiers {added} unreachable until repaired"
            )
            raise

        return public_user(updated)

    def delete(self, user_id: str) -> bool:
        current = self.records.get_by_id(user_id)
        if current is None:
            raise NotFoundError("User not found")

        keys = identifier_keys(current)

        def _remove(entries: Dict[str, str]) -> bool:
            changed = False
            for k in keys:
                # Only retract entries that still point at this user.
                if entries.get(k) == user_id:
                    del entries[k]
                    changed = True
            return changed

        # Index first: the record must outlive every entry that points at it.
        self._mutate_index(_remove)
        try:
            self.records.delete(user_id)
        except StorageError as err:
            _debug(f"INCONSISTENCY: index entries for {user_id} removed but record delete failed ({err})")
            raise
        _debug(f"Deleted user id={user_id}")
        return True

    # -----------------------------
    # Reconciliation
    # -----------------------------

    def audit(self) -> AuditReport:
        """Compare the index against a full scan of the records."""
        snap = self.index.load()
        report = AuditReport(index_entries=len(snap.entries))

        records: Dict[str, Dict[str, Any]] = {}
        claims: Dict[str, List[str]] = {}
        for record in self.iter_records():
            uid = str(record.get("id") or "")
            if not uid:
                continue
            records[uid] = record
            for k in identifier_keys(record):
                claims.setdefault(k, []).append(uid)
        report.records = len(records)

        for k, uid in snap.entries.items():
            record = records.get(uid)
            if record is None:
                report.dangling[k] = uid
            elif k not in identifier_keys(record):
                report.stale[k] = uid

        for k, uids in claims.items():
            if len(uids) > 1:
                report.duplicates[k] = sorted(uids)
            elif snap.entries.get(k) != uids[0]:
                report.missing[k] = uids[0]

        reachable = {
            uid for k, uid in snap.entries.items() if k not in report.dangling and k not in report.stale
        }
        report.orphans = sorted(uid for uid in records if uid not in reachable)
        return report

    def repair(self) -> int:
        """Rebuild the index from the records. Returns the number of entries written.

        When two records claim the same identifier, the earliest created keeps it.
        """
        ordered = sorted(self.iter_records(), key=lambda r: (str(r.get("created_at") or ""), str(r.get("id"))))
        rebuilt: Dict[str, str] = {}
        for record in ordered:
            uid = str(record.get("id") or "")
            if not uid:
                continue
            for k in identifier_keys(record):
                if k in rebuilt:
                    _debug(f"Identifier {k!r} claimed by {rebuilt[k]} and {uid}; keeping {rebuilt[k]}")
                    continue
                rebuilt[k] = uid

        def _replace(entries: Dict[str, str]) -> bool:
            if entries == rebuilt:
                return False
            entries.clear()
            entries.update(rebuilt)
            return True

        self._mutate_index(_replace)
        _debug(f"Index rebuilt with {len(rebuilt)} entries from {len(ordered)} records")
        return len(rebuilt)
