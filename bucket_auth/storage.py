from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from bucket_auth.errors import StorageError
from bucket_auth.util.hashing import md5_hex_bytes


def _debug(msg: str) -> None:
    print(f"[store] {msg}")


class ObjectNotFound(Exception):
    """Existence miss for a key. Callers decide whether a miss is an error."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"object not found: {key}")


class PreconditionFailed(StorageError):
    """A conditional PUT lost (If-Match / If-None-Match did not hold)."""

    default_detail = "precondition_failed"


@dataclass(frozen=True)
class StoredObject:
    key: str
    body: bytes
    etag: str | None


@dataclass(frozen=True)
class ListPage:
    keys: List[str]
    # Opaque cursor for the next page; None means there are no further pages.
    next_marker: str | None


class ObjectStore:
    """Bucket-style key/object primitives.

    All calls are network (or disk) I/O and may fail; nothing here retries.
    The store knows nothing about users or indexes.
    """

    backend = "abstract"

    def __init__(self, bucket: str):
        self.bucket = bucket

    def get(self, key: str) -> StoredObject:
        raise NotImplementedError

    def put(
        self,
        key: str,
        body: bytes,
        content_type: str = "application/json",
        *,
        if_match: str | None = None,
        if_none_match: bool = False,
    ) -> str | None:
        """Write `body` under `key`; returns the new ETag when the backend reports one.

        - if_match: only write if the current ETag equals this value
        - if_none_match: only write if the key does not exist yet
        Raises PreconditionFailed when the condition does not hold.
        """
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def list(self, prefix: str, limit: int = 100, marker: str | None = None) -> ListPage:
        raise NotImplementedError

    def ensure_container(self, name: str | None = None) -> bool:
        """Create the container if it is missing. Returns True if it was created."""
        raise NotImplementedError

    # JSON convenience on top of the raw primitives.

    def get_json(self, key: str) -> Tuple[Any, str | None]:
        obj = self.get(key)
        try:
            return json.loads(obj.body.decode("utf-8")), obj.etag
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise StorageError(f"Malformed JSON object at {key}", detail="malformed_object") from e

    def put_json(
        self,
        key: str,
        data: Any,
        *,
        if_match: str | None = None,
        if_none_match: bool = False,
    ) -> str | None:
        body = json.dumps(data, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
        return self.put(
            key,
            body,
            "application/json",
            if_match=if_match,
            if_none_match=if_none_match,
        )


# -----------------------------
# S3 / IBM COS
# -----------------------------

_NOT_FOUND_CODES = ("NoSuchKey", "NotFound", "404")
_NO_BUCKET_CODES = ("NoSuchBucket", "NotFound", "404")
_PRECONDITION_CODES = ("PreconditionFailed", "412", "ConditionalRequestConflict")


def _client_error_code(e: Any) -> Tuple[str, int]:
    resp = getattr(e, "response", None) or {}
    code = str((resp.get("Error") or {}).get("Code") or "")
    status = int((resp.get("ResponseMetadata") or {}).get("HTTPStatusCode") or 0)
    return code, status


class S3ObjectStore(ObjectStore):
    """boto3-backed store; works against IBM COS, MinIO and AWS S3."""

    backend = "s3"

    def __init__(self, client: Any, bucket: str, *, location: str | None = None):
        super().__init__(bucket)
        self._client = client
        self._location = location

    def _translate(self, e: Exception, key: str | None, op: str) -> Exception:
        from botocore.exceptions import ClientError

        if isinstance(e, ClientError):
            code, status = _client_error_code(e)
            if key is not None and (code in _NOT_FOUND_CODES or status == 404):
                return ObjectNotFound(key)
            if code in _PRECONDITION_CODES or status == 412:
                return PreconditionFailed(f"Conditional {op} failed for {key}")
            return StorageError(f"{op} {key or self.bucket} failed: {code or status}")
        return StorageError(f"{op} {key or self.bucket} failed: {e}")

    def get(self, key: str) -> StoredObject:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            resp = self._client.get_object(Bucket=self.bucket, Key=key)
            body = resp["Body"].read()
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, key, "get") from e
        return StoredObject(key=key, body=body, etag=resp.get("ETag"))

    def put(
        self,
        key: str,
        body: bytes,
        content_type: str = "application/json",
        *,
        if_match: str | None = None,
        if_none_match: bool = False,
    ) -> str | None:
        from botocore.exceptions import BotoCoreError, ClientError

        params: Dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": body,
            "ContentType": content_type,
        }
        if if_match:
            params["IfMatch"] = if_match
        if if_none_match:
            params["IfNoneMatch"] = "*"
        try:
            resp = self._client.put_object(**params)
        except ClientError as e:
            code, status = _client_error_code(e)
            if code in _PRECONDITION_CODES or status == 412:
                raise PreconditionFailed(f"Conditional put failed for {key}") from e
            raise self._translate(e, None, "put") from e
        except BotoCoreError as e:
            raise self._translate(e, None, "put") from e
        return resp.get("ETag")

    def delete(self, key: str) -> None:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self._client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, None, "delete") from e

    def list(self, prefix: str, limit: int = 100, marker: str | None = None) -> ListPage:
        from botocore.exceptions import BotoCoreError, ClientError

        params: Dict[str, Any] = {
            "Bucket": self.bucket,
            "Prefix": prefix,
            "MaxKeys": max(1, int(limit)),
        }
        if marker:
            params["Marker"] = marker
        try:
            resp = self._client.list_objects(**params)
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, None, "list") from e

        keys = [str(it["Key"]) for it in (resp.get("Contents") or [])]
        next_marker = None
        if resp.get("IsTruncated") and keys:
            # V1 listings only return NextMarker when a delimiter is used.
            next_marker = resp.get("NextMarker") or keys[-1]
        return ListPage(keys=keys, next_marker=next_marker)

    def ensure_container(self, name: str | None = None) -> bool:
        from botocore.exceptions import BotoCoreError, ClientError

        bucket = name or self.bucket
        try:
            self._client.head_bucket(Bucket=bucket)
            _debug(f"Bucket {bucket} already exists")
            return False
        except ClientError as e:
            code, status = _client_error_code(e)
            if code not in _NO_BUCKET_CODES and status != 404:
                raise self._translate(e, None, "head_bucket") from e
        except BotoCoreError as e:
            raise self._translate(e, None, "head_bucket") from e

        params: Dict[str, Any] = {"Bucket": bucket}
        if self._location:
            params["CreateBucketConfiguration"] = {"LocationConstraint": self._location}
        try:
            self._client.create_bucket(**params)
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, None, "create_bucket") from e
        _debug(f"Created bucket {bucket}")
        return True


def make_s3_client(cfg: Any) -> Any:
    import boto3
    from botocore.config import Config as BotoConfig

    return boto3.client(
        "s3",
        endpoint_url=getattr(cfg, "COS_ENDPOINT", None),
        aws_access_key_id=getattr(cfg, "COS_ACCESS_KEY_ID", None),
        aws_secret_access_key=getattr(cfg, "COS_SECRET_ACCESS_KEY", None),
        region_name=getattr(cfg, "COS_REGION", None),
        config=BotoConfig(signature_version="s3v4"),
    )


# -----------------------------
# Local directory
# -----------------------------


class LocalObjectStore(ObjectStore):
    """Directory-backed store for development and tests.

    Keys map to files under `root`. Writes go through a temp file + rename so
    readers never see partial objects. ETags are quoted MD5 digests like S3's.
    """

    backend = "local"
    _TMP_DIR = ".tmp"

    def __init__(self, root: str | Path, bucket: str | None = None):
        self.root = Path(root)
        super().__init__(bucket or self.root.name)
        # Serializes conditional check-and-put within this process.
        self._lock = threading.Lock()

    def _path(self, key: str) -> Path:
        parts = [p for p in key.split("/") if p]
        if not parts or any(p in (".", "..") for p in parts) or parts[0] == self._TMP_DIR:
            raise StorageError(f"Invalid object key: {key!r}", detail="invalid_key")
        return self.root.joinpath(*parts)

    @staticmethod
    def _etag(body: bytes) -> str:
        return f'"{md5_hex_bytes(body)}"'

    def get(self, key: str) -> StoredObject:
        path = self._path(key)
        try:
            body = path.read_bytes()
        except FileNotFoundError as e:
            raise ObjectNotFound(key) from e
        except OSError as e:
            raise StorageError(f"get {key} failed: {e}") from e
        return StoredObject(key=key, body=body, etag=self._etag(body))

    def put(
        self,
        key: str,
        body: bytes,
        content_type: str = "application/json",
        *,
        if_match: str | None = None,
        if_none_match: bool = False,
    ) -> str | None:
        path = self._path(key)
        with self._lock:
            if if_match or if_none_match:
                try:
                    current = self._etag(path.read_bytes())
                except FileNotFoundError:
                    current = None
                except OSError as e:
                    raise StorageError(f"put {key} failed: {e}") from e
                if if_none_match and current is not None:
                    raise PreconditionFailed(f"Conditional put failed for {key}: exists")
                if if_match and current != if_match:
                    raise PreconditionFailed(f"Conditional put failed for {key}: etag changed")
            try:
                self._write(path, body)
            except OSError as e:
                raise StorageError(f"put {key} failed: {e}") from e
        return self._etag(body)

    def _write(self, path: Path, body: bytes) -> None:
        tmp_dir = self.root / self._TMP_DIR
        tmp_dir.mkdir(parents=True, exist_ok=True)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(tmp_dir))
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(body)
            os.replace(tmp_name, path)
        except Exception:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def delete(self, key: str) -> None:
        # Deleting a missing key is not an error (matches S3 DeleteObject).
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"delete {key} failed: {e}") from e

    def _all_keys(self) -> List[str]:
        if not self.root.is_dir():
            return []
        keys: List[str] = []
        for p in self.root.rglob("*"):
            if not p.is_file():
                continue
            rel = p.relative_to(self.root).as_posix()
            if rel.split("/", 1)[0] == self._TMP_DIR:
                continue
            keys.append(rel)
        return sorted(keys)

    def list(self, prefix: str, limit: int = 100, marker: str | None = None) -> ListPage:
        try:
            keys = [k for k in self._all_keys() if k.startswith(prefix)]
        except OSError as e:
            raise StorageError(f"list {prefix} failed: {e}") from e
        if marker:
            keys = [k for k in keys if k > marker]
        n = max(1, int(limit))
        page = keys[:n]
        next_marker = page[-1] if len(keys) > n else None
        return ListPage(keys=page, next_marker=next_marker)

    def ensure_container(self, name: str | None = None) -> bool:
        root = self.root if not name or name == self.bucket else self.root.parent / name
        if root.is_dir():
            return False
        try:
            root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"create container {root} failed: {e}") from e
        _debug(f"Created local store at {root}")
        return True


# -----------------------------
# Selection
# -----------------------------


def _detect_backend(dsn: str) -> str:
    """Return 's3' or 'local'."""
    s = (dsn or "").strip()
    if not s:
        return "local"
    try:
        scheme = urlparse(s).scheme.lower()
    except Exception:
        scheme = ""
    if scheme in ("s3", "cos"):
        return "s3"
    return "local"


def open_store(dsn: str, cfg: Any = None, *, client: Any = None) -> ObjectStore:
    """Build the object store for a DSN.

    - s3://bucket or cos://bucket: boto3 client against COS_ENDPOINT
    - file:///path or a plain path: local directory
    """
    s = (dsn or "").strip()
    backend = _detect_backend(s)

    if backend == "s3":
        bucket = urlparse(s).netloc or str(getattr(cfg, "COS_BUCKET_NAME", "") or "")
        if not bucket:
            raise StorageError("S3 store selected but no bucket name is configured", detail="store_config")
        if client is None:
            client = make_s3_client(cfg)
        _debug(f"Using S3 store bucket={bucket} endpoint={getattr(cfg, 'COS_ENDPOINT', None)}")
        return S3ObjectStore(client, bucket, location=getattr(cfg, "COS_LOCATION", None))

    if s.lower().startswith("file://"):
        s = s[len("file://") :]
    path = Path(s or "./data/store")
    _debug(f"Using local store at {path}")
    return LocalObjectStore(path)
