"""Create a user in the configured store.

Usage:
  python scripts/create_user.py --username alice --email alice@example.com --password '...' --role user

NOTE: This is intended for local/dev.
"""

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from bucket_auth.config import load_config
from bucket_auth.directory.service import DirectoryService
from bucket_auth.storage import open_store


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--username", required=True)
    ap.add_argument("--email", required=True)
    ap.add_argument("--password", required=True)
    ap.add_argument("--role", choices=["user", "admin"], default="user")
    args = ap.parse_args()

    cfg = load_config()
    directory = DirectoryService.from_config(cfg, open_store(cfg.STORE_DSN, cfg))
    directory.ensure_storage()

    u = directory.register(args.username, args.email, args.password, role=args.role)

    print("Created user:")
    print(u)


if __name__ == "__main__":
    main()
