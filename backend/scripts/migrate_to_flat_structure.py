"""
Flatten date-partitioned blobs (YYYY/MM/DD/filename.json) to flat filenames.

Usage:
  python backend/scripts/migrate_to_flat_structure.py [--delete-source]

Copies each partitioned blob to its bare filename in the same container,
carrying its metadata over. Files whose flat name already exists are
skipped. With --delete-source the partitioned original is removed after a
successful copy.
"""
import asyncio
import re
import sys
from pathlib import Path

from azure.storage.blob.aio import BlobServiceClient

# Ensure project root is on sys.path so `backend` package is importable
ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.app.config import is_storage_configured, settings

DATE_PARTS = (re.compile(r"^\d{4}$"), re.compile(r"^\d{2}$"), re.compile(r"^\d{2}$"))
COPY_POLL_ATTEMPTS = 30


def flat_name(blob_name: str):
    """Return the flat filename for a date-partitioned path, or None."""
    parts = blob_name.split("/")
    if len(parts) != 4:
        return None
    if all(pattern.match(part) for pattern, part in zip(DATE_PARTS, parts[:3])):
        return parts[3]
    return None


async def wait_for_copy(blob_client) -> None:
    for _ in range(COPY_POLL_ATTEMPTS):
        properties = await blob_client.get_blob_properties()
        status = properties.copy.status
        if status == "success":
            return
        if status == "failed":
            raise RuntimeError(f"Copy failed: {properties.copy.status_description}")
        await asyncio.sleep(1)
    raise RuntimeError("Copy operation timed out")


async def migrate_container(service: BlobServiceClient, container_name: str, delete_source: bool) -> dict:
    print(f"\n[MIGRATE] Container: {container_name}")
    container = service.get_container_client(container_name)
    counts = {"migrated": 0, "skipped": 0, "errors": 0}

    async for blob in container.list_blobs(include=["metadata"]):
        target_name = flat_name(blob.name)
        if target_name is None:
            counts["skipped"] += 1
            continue

        target = container.get_blob_client(target_name)
        try:
            if await target.exists():
                print(f"[MIGRATE] Flat file already exists, skipping: {target_name}")
                counts["skipped"] += 1
                continue

            source = container.get_blob_client(blob.name)
            await target.start_copy_from_url(source.url)
            await wait_for_copy(target)
            if blob.metadata:
                await target.set_blob_metadata(blob.metadata)

            if delete_source:
                await source.delete_blob()
            print(f"[MIGRATE] {blob.name} -> {target_name}")
            counts["migrated"] += 1
        except Exception as e:
            print(f"[MIGRATE] Error migrating {blob.name}: {e}")
            counts["errors"] += 1

    print(f"[MIGRATE] {container_name}: migrated={counts['migrated']} skipped={counts['skipped']} errors={counts['errors']}")
    return counts


async def main(delete_source: bool = False) -> int:
    if not is_storage_configured(settings):
        print("[MIGRATE] AZURE_STORAGE_CONNECTION_STRING not set")
        return 1

    async with BlobServiceClient.from_connection_string(settings.azure_storage_connection_string) as service:
        errors = 0
        for name in settings.container_names.values():
            counts = await migrate_container(service, name, delete_source)
            errors += counts["errors"]
    return 1 if errors else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main(delete_source="--delete-source" in sys.argv[1:])))
