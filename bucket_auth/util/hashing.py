import hashlib


def md5_hex_bytes(b: bytes) -> str:
    """Content digest in the same shape S3 uses for single-part ETags."""
    return hashlib.md5(b).hexdigest()
