import logging
import time
from dataclasses import dataclass, field
from typing import List, Protocol, Tuple

from bson import ObjectId

from errors import StorageError

logger = logging.getLogger(__name__)

ORPHAN_COLLECTION = "orphanedfiles"


@dataclass(frozen=True)
class OrphanedFiles:
    resource: str
    id: ObjectId
    removed_filenames: Tuple[str, ...] = field(default_factory=tuple)


class OrphanSink(Protocol):
    def notify(self, event: OrphanedFiles) -> None: ...


class OrphanQueue:
    """Hands orphaned filenames to the file cleaner through a storage collection."""

    def __init__(self, storage, collection: str = ORPHAN_COLLECTION):
        self.storage = storage
        self.collection = collection

    def notify(self, event: OrphanedFiles) -> None:
        logger.info(
            "orphaned files on %s %s: %s",
            event.resource, event.id, ", ".join(event.removed_filenames),
        )
        try:
            self.storage.insert(self.collection, {
                "resource": event.resource,
                "resourceId": event.id,
                "filenames": list(event.removed_filenames),
                "queuedAt": int(time.time() * 1000),
            })
        except StorageError:
            # the mutation is already committed; the cleaner can sweep later
            logger.exception("could not queue orphaned files for %s %s", event.resource, event.id)


def filenames(value) -> List[str]:
    """Filenames referenced by a file field: one {filename} object or a list of them."""
    items = value if isinstance(value, list) else [value]
    names = []
    for item in items:
        if isinstance(item, dict) and item.get("filename"):
            names.append(item["filename"])
    return names
