"""Initial cache warm-up from NSX.

The three stores (groups, security policies, rules) are populated
concurrently, one task per object kind, each task writing only its own store.
The first failing listing cancels the other tasks, and the coordinator
waits for them to unwind before raising, so no store is written after
``sync_stores`` returns or raises.

A task writes its store only after its whole listing has been read, so a
cancelled task never leaves a half-populated store behind. The three
listings are independent point-in-time reads; they are not consistent with
each other.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterator
from dataclasses import dataclass, field

from .models import Group, NsxResource, Rule, SecurityPolicy
from .nsx_client import NsxClient
from .store import IndexedStore

logger = logging.getLogger(__name__)


class SyncError(Exception):
    """Raised when the initial listing of an object kind fails."""

    def __init__(self, resource_type: str, message: str) -> None:
        super().__init__(f"Initial sync of {resource_type} failed: {message}")
        self.resource_type = resource_type


@dataclass
class SecurityPolicyStores:
    """The three local mirrors of NSX state, joined by owner tag."""

    groups: IndexedStore[Group] = field(default_factory=lambda: IndexedStore("Group"))
    policies: IndexedStore[SecurityPolicy] = field(
        default_factory=lambda: IndexedStore("SecurityPolicy")
    )
    rules: IndexedStore[Rule] = field(default_factory=lambda: IndexedStore("Rule"))

    def by_kind(self) -> Iterator[tuple[str, IndexedStore]]:
        yield "Group", self.groups
        yield "SecurityPolicy", self.policies
        yield "Rule", self.rules


async def fetch_all(client: NsxClient, resource_type: str) -> list[NsxResource]:
    """Read every page of one object kind, one executor call per page.

    Cancellation takes effect between pages.
    """
    loop = asyncio.get_event_loop()
    objects: list[NsxResource] = []
    cursor: str | None = None
    while True:
        page, cursor = await loop.run_in_executor(None, client.list_page, resource_type, cursor)
        objects.extend(page)
        if cursor is None:
            return objects


async def _sync_kind(client: NsxClient, resource_type: str, store: IndexedStore) -> None:
    start = time.monotonic()
    try:
        objects = await fetch_all(client, resource_type)
    except Exception as e:
        logger.error(
            "Initial listing failed",
            extra={"resource_type": resource_type, "error": str(e)},
        )
        raise SyncError(resource_type, str(e)) from e

    # Objects already being torn down in NSX are not mirrored.
    active = [obj for obj in objects if not obj.is_marked_for_delete]
    store.replace(active)
    logger.info(
        "Synced store",
        extra={
            "resource_type": resource_type,
            "count": len(active),
            "skipped_marked_for_delete": len(objects) - len(active),
            "duration_seconds": round(time.monotonic() - start, 3),
        },
    )


async def sync_stores(client: NsxClient, stores: SecurityPolicyStores) -> None:
    """Populate all stores from NSX, failing fast on the first listing error.

    Raises:
        SyncError: For the first object kind whose listing failed. The other
            listings have been cancelled and awaited by then.
    """
    try:
        async with asyncio.TaskGroup() as tg:
            for resource_type, store in stores.by_kind():
                tg.create_task(
                    _sync_kind(client, resource_type, store),
                    name=f"sync-{resource_type}",
                )
    except ExceptionGroup as eg:
        raise eg.exceptions[0]
