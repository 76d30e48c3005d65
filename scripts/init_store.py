import sys
from pathlib import Path

# Ensure project root is on sys.path when running as a script
ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from bucket_auth.config import load_config
from bucket_auth.directory.service import DirectoryService
from bucket_auth.storage import open_store


def main() -> None:
    cfg = load_config()
    directory = DirectoryService.from_config(cfg, open_store(cfg.STORE_DSN, cfg))
    directory.ensure_storage()
    print(f"Store initialized: {cfg.STORE_DSN}")


if __name__ == "__main__":
    main()
