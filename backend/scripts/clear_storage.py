"""
Utility to delete every call log and analysis from blob storage.

Usage:
  python backend/scripts/clear_storage.py --yes

Containers are kept; only their blobs are removed. Backups are not touched.
"""
import asyncio
import sys
from pathlib import Path

# Ensure project root is on sys.path so `backend` package is importable
ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.app.blob_storage import BlobStorageService, clear_all_files
from backend.app.config import is_storage_configured, settings


async def main() -> int:
    if not is_storage_configured(settings):
        print("[STORAGE-CLEAR] AZURE_STORAGE_CONNECTION_STRING not set. Nothing to clear.")
        return 1

    storage = BlobStorageService.from_settings(settings)
    try:
        print(f"[STORAGE-CLEAR] Clearing containers: {settings.azure_storage_container_raw}, "
              f"{settings.azure_storage_container_processed}")
        counts = await clear_all_files(storage)
    finally:
        await storage.close()

    print(f"[STORAGE-CLEAR] Done. Deleted {counts['deleted']} files, {counts['failed']} failures.")
    return 1 if counts["failed"] else 0


if __name__ == "__main__":
    if "--yes" not in sys.argv[1:]:
        print("[STORAGE-CLEAR] Refusing to run without --yes")
        sys.exit(2)
    sys.exit(asyncio.run(main()))
