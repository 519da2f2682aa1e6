"""Periodic reconcile loop over SecurityPolicy manifests.

Each cycle:
1. Loads every manifest from the specs directory
2. Creates or updates the NSX objects of each manifest
3. Deletes, by owner uid, every NSX footprint whose manifest is gone
4. Waits for the next interval or shutdown

Operations for one owner uid are serialized by a per-uid lock; operations
for different owners run concurrently. Failures of one owner are logged and
retried on the next cycle, they never abort the cycle.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .config import Config
from .models import SecurityPolicyCR
from .service import ByOwner, DeleteTarget, SecurityPolicyService
from .spec_loader import SpecLoadError, load_security_policies

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Result of a single reconcile cycle."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    applied: int = 0
    unchanged: int = 0
    deleted: int = 0
    failures: dict[str, str] = field(default_factory=dict)
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the whole cycle succeeded."""
        return self.error is None and not self.failures


class PolicyReconciler:
    """Drives a SecurityPolicyService from manifests on disk."""

    def __init__(self, service: SecurityPolicyService, config: Config) -> None:
        self._service = service
        self._config = config
        self._locks: dict[str, asyncio.Lock] = {}
        self._shutdown_event = asyncio.Event()

    def _lock_for(self, uid: str) -> asyncio.Lock:
        lock = self._locks.get(uid)
        if lock is None:
            lock = self._locks[uid] = asyncio.Lock()
        return lock

    async def reconcile(self, cr: SecurityPolicyCR) -> bool:
        """Create or update one custom resource, serialized per uid."""
        async with self._lock_for(cr.uid):
            return await self._service.create_or_update_security_policy(cr)

    async def delete(self, target: DeleteTarget) -> bool:
        uid = target.uid if isinstance(target, ByOwner) else target.resource.uid
        async with self._lock_for(uid):
            return await self._service.delete_security_policy(target)

    async def _reconcile_one(self, cr: SecurityPolicyCR, result: ReconcileResult) -> None:
        try:
            if await self.reconcile(cr):
                result.applied += 1
            else:
                result.unchanged += 1
        except Exception as e:
            result.failures[cr.uid] = str(e)
            logger.error(
                "Failed to reconcile security policy",
                extra={
                    "uid": cr.uid,
                    "namespace": cr.metadata.namespace,
                    "cr_name": cr.metadata.name,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )

    async def _delete_one(self, uid: str, result: ReconcileResult) -> None:
        try:
            if await self.delete(ByOwner(uid)):
                result.deleted += 1
        except Exception as e:
            result.failures[uid] = str(e)
            logger.error(
                "Failed to delete orphaned security policy",
                extra={"uid": uid, "error": str(e), "error_type": type(e).__name__},
            )

    async def reconcile_once(self) -> ReconcileResult:
        result = ReconcileResult()
        try:
            desired = load_security_policies(self._config.specs_dir)
        except SpecLoadError as e:
            # Without a trustworthy desired set, orphan cleanup would delete everything.
            logger.error("Failed to load manifests", extra={"error": str(e)})
            result.error = e
            result.end_time = datetime.now(UTC)
            return result

        await asyncio.gather(*(self._reconcile_one(cr, result) for cr in desired))

        desired_uids = {cr.uid for cr in desired}
        orphans = sorted(self._service.list_security_policy_ids() - desired_uids)
        await asyncio.gather(*(self._delete_one(uid, result) for uid in orphans))

        result.end_time = datetime.now(UTC)
        return result

    async def run(self) -> None:
        """Run reconcile cycles at the configured interval until shutdown."""
        logger.info(
            "Starting reconciler",
            extra={
                "cluster": self._config.cluster,
                "domain": self._config.domain,
                "specs_dir": str(self._config.specs_dir),
                "interval_seconds": self._config.reconcile_interval_seconds,
            },
        )

        while not self._shutdown_event.is_set():
            result = await self.reconcile_once()
            self._log_result(result)

            # Wait for next cycle or shutdown
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._config.reconcile_interval_seconds,
                )
            except TimeoutError:
                # Normal timeout, continue to next cycle
                pass

        logger.info("Reconciler shutdown complete", extra={"cluster": self._config.cluster})

    def shutdown(self) -> None:
        """Signal the reconciler to stop."""
        logger.info("Shutdown requested", extra={"cluster": self._config.cluster})
        self._shutdown_event.set()

    def _log_result(self, result: ReconcileResult) -> None:
        extra = {
            "applied": result.applied,
            "unchanged": result.unchanged,
            "deleted": result.deleted,
            "failed": len(result.failures),
            "duration_seconds": result.duration_seconds,
        }
        if result.success:
            logger.info("Reconcile cycle completed", extra=extra)
        else:
            logger.warning(
                "Reconcile cycle completed with errors",
                extra={**extra, "error": str(result.error) if result.error else None},
            )
