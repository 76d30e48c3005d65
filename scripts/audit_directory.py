"""Compare the username/email index against the user records.

Usage:
  python scripts/audit_directory.py            # report only
  python scripts/audit_directory.py --repair   # rebuild the index from the records

Records are authoritative; --repair rewrites the index to match them.
Exits 1 when the audit finds problems and --repair was not given.
"""

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from bucket_auth.config import load_config
from bucket_auth.directory.service import DirectoryService
from bucket_auth.storage import open_store


def main() -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--repair", action="store_true", help="Rebuild the index from the records")
    args = ap.parse_args()

    cfg = load_config()
    directory = DirectoryService.from_config(cfg, open_store(cfg.STORE_DSN, cfg))

    report = directory.audit()
    print(json.dumps(report.as_dict(), indent=2, sort_keys=True))

    if report.ok:
        return 0
    if not args.repair:
        return 1

    n = directory.repair()
    print(f"Index rebuilt with {n} entries")
    after = directory.audit()
    print(json.dumps(after.as_dict(), indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    sys.exit(main())
