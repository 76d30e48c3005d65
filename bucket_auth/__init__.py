"""User authentication API backed by an object-storage bucket.

The bucket is used as a tiny document store:
- One JSON object per user (`users/<id>.json`), authoritative.
- One JSON index object (`indices/username-email-index.json`) mapping
  lowercased usernames and emails to user ids.

There is no transaction across the two, so every mutation follows a fixed
write order (see `bucket_auth.directory.service`).
"""

__all__ = ["__version__"]

__version__ = "1.3.0"
