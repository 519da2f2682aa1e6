"""Reconciliation of SecurityPolicy custom resources against NSX.

The service keeps a local, owner-indexed mirror of NSX groups, security
policies and rules, diffs the desired object graph of a custom resource
against it, and sends only what changed (plus deletions of what went stale)
in a single hierarchical patch.

Store mutation happens only after NSX accepted the patch, so the mirror is
never ahead of what NSX actually applied.

Callers must not run two operations for the same owner concurrently.
Operations for different owners may run concurrently.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TypeVar

from azure.core.exceptions import AzureError

from .builder import BuildError, build_security_policy
from .compare import compare_resource, compare_resources
from .config import ENFORCE_REVISION_CHECK, MARKED_FOR_DELETE, Config
from .deletion import assemble, mark_for_delete
from .hierarchy import wrap_hierarchy
from .models import Group, NsxResource, Rule, SecurityPolicy, SecurityPolicyCR
from .nsx_client import NsxClient
from .sync import SecurityPolicyStores, sync_stores

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=NsxResource)


@dataclass(frozen=True)
class ByResource:
    """Delete everything the given custom resource builds to (plus any leftovers)."""

    resource: SecurityPolicyCR


@dataclass(frozen=True)
class ByOwner:
    """Delete whatever the stores hold for an owner uid; the resource itself is gone."""

    uid: str


DeleteTarget = ByResource | ByOwner


def _union(primary: Sequence[T], extra: Sequence[T]) -> list[T]:
    seen = {obj.id for obj in primary}
    return list(primary) + [obj for obj in extra if obj.id not in seen]


def _rule_of(rule: Rule, policy: SecurityPolicy) -> bool:
    """Whether ``rule`` lives under ``policy``: by NSX path when both are known, else by id."""
    if rule.parent_path and policy.path:
        return rule.parent_path == policy.path
    return rule.id.startswith(f"{policy.id}_")


class SecurityPolicyService:
    """Create, update and delete NSX security policies for custom resources."""

    def __init__(
        self,
        client: NsxClient,
        config: Config,
        stores: SecurityPolicyStores | None = None,
    ) -> None:
        self._client = client
        self._config = config
        self._stores = stores if stores is not None else SecurityPolicyStores()

    @classmethod
    async def initialize(cls, client: NsxClient, config: Config) -> SecurityPolicyService:
        """Create the service and warm its stores from NSX.

        Raises:
            SyncError: If any of the initial listings fails.
        """
        service = cls(client, config)
        await sync_stores(client, service._stores)
        return service

    @property
    def stores(self) -> SecurityPolicyStores:
        return self._stores

    def _build(self, cr: SecurityPolicyCR) -> tuple[SecurityPolicy, list[Group]]:
        try:
            return build_security_policy(cr, self._config.cluster, self._config.domain)
        except BuildError as e:
            logger.error(
                "Failed to build SecurityPolicy",
                extra={
                    "namespace": cr.metadata.namespace,
                    "cr_name": cr.metadata.name,
                    "error": str(e),
                },
            )
            raise

    async def _patch(self, policy: SecurityPolicy | None, groups: Sequence[Group]) -> None:
        infra = wrap_hierarchy(policy, groups, self._config.domain)
        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(
                None, self._client.patch_infra, infra, ENFORCE_REVISION_CHECK
            )
        except AzureError as e:
            logger.error(
                "Hierarchical patch failed",
                extra={"policy_id": policy.id if policy else None, "error": str(e)},
            )
            raise

    async def create_or_update_security_policy(self, cr: SecurityPolicyCR) -> bool:
        """Converge NSX to the custom resource.

        Returns:
            True if a patch was sent, False if nothing had changed.

        Raises:
            BuildError: If the custom resource cannot be translated.
            AzureError: If NSX rejected the patch.
        """
        desired_policy, desired_groups = self._build(cr)

        if not desired_policy.scope:
            logger.info(
                "SecurityPolicy has empty policy-level appliedTo",
                extra={"policy_id": desired_policy.id},
            )

        existing_policy = self._stores.policies.get(desired_policy.id)
        existing_rules = self._stores.rules.list_by_index(cr.uid)
        existing_groups = self._stores.groups.list_by_index(cr.uid)

        policy_changed = compare_resource(existing_policy, desired_policy)
        rule_diff = compare_resources(existing_rules, desired_policy.rules)
        group_diff = compare_resources(existing_groups, desired_groups)

        if not (policy_changed or rule_diff.has_changes or group_diff.has_changes):
            logger.info(
                "Security policy, rules and groups are not changed, skip updating them",
                extra={"policy_id": desired_policy.id},
            )
            return False

        # Rules and groups can change while the policy's own fields do not.
        base_policy = desired_policy if policy_changed else existing_policy
        assert base_policy is not None
        final_rules = assemble(rule_diff.stale, rule_diff.changed)
        final_policy = base_policy.model_copy(update={"rules": final_rules})
        final_groups = assemble(group_diff.stale, group_diff.changed)

        await self._patch(final_policy, final_groups)

        if policy_changed:
            self._stores.policies.apply(desired_policy)
        if rule_diff.has_changes:
            self._stores.rules.apply_all(final_rules)
        if group_diff.has_changes:
            self._stores.groups.apply_all(final_groups)

        logger.info(
            "Created or updated security policy",
            extra={
                "policy_id": desired_policy.id,
                "policy_changed": policy_changed,
                "rules_changed": len(rule_diff.changed),
                "rules_stale": len(rule_diff.stale),
                "groups_changed": len(group_diff.changed),
                "groups_stale": len(group_diff.stale),
            },
        )
        return True

    def _collect_by_owner(
        self, uid: str
    ) -> tuple[SecurityPolicy | None, list[Group], list[Rule]]:
        policies = self._stores.policies.list_by_index(uid)
        if not policies:
            logger.info("Did not get security policy with index", extra={"uid": uid})
        elif len(policies) > 1:
            logger.warning(
                "More than one security policy for owner, deleting the first",
                extra={"uid": uid, "policy_ids": [p.id for p in policies]},
            )
        groups = self._stores.groups.list_by_index(uid)
        if not groups:
            logger.info("Did not get groups with index", extra={"uid": uid})
        rules = self._stores.rules.list_by_index(uid)
        if not rules:
            logger.info("Did not get rules with index", extra={"uid": uid})
        if len(policies) > 1:
            # The remaining policies keep the owner listed and go in a later
            # call; groups they may still reference go with the last one.
            rules = [r for r in rules if _rule_of(r, policies[0])]
            groups = []
        return (policies[0] if policies else None), groups, rules

    async def delete_security_policy(self, target: DeleteTarget) -> bool:
        """Delete the policy, its rules and its groups from NSX and the stores.

        Returns:
            True if a patch was sent, False if there was nothing to delete.

        Raises:
            BuildError: If a ByResource target cannot be translated.
            AzureError: If NSX rejected the patch.
        """
        policy: SecurityPolicy | None
        match target:
            case ByResource(resource=cr):
                policy, groups = self._build(cr)
                uid = cr.uid
                groups = _union(groups, self._stores.groups.list_by_index(uid))
                rules = _union(policy.rules, self._stores.rules.list_by_index(uid))
            case ByOwner(uid=uid):
                policy, groups, rules = self._collect_by_owner(uid)
                if policy is None and not groups:
                    return False
                if policy is None:
                    # Rules are only ever sent under their policy.
                    rules = []
            case _:
                raise TypeError(f"Unsupported delete target: {target!r}")

        deleted_rules = mark_for_delete(reversed(rules))
        deleted_groups = mark_for_delete(reversed(groups))
        deleted_policy = None
        if policy is not None:
            deleted_policy = policy.model_copy(
                update={"marked_for_delete": MARKED_FOR_DELETE, "rules": deleted_rules}
            )

        await self._patch(deleted_policy, deleted_groups)

        if deleted_policy is not None:
            self._stores.policies.apply(deleted_policy)
        self._stores.groups.apply_all(deleted_groups)
        self._stores.rules.apply_all(deleted_rules)

        logger.info(
            "Deleted security policy",
            extra={
                "uid": uid,
                "policy_id": deleted_policy.id if deleted_policy else None,
                "groups": len(deleted_groups),
                "rules": len(deleted_rules),
            },
        )
        return True

    async def create_or_update_groups(self, groups: Sequence[Group]) -> None:
        """Patch groups one by one, mirroring each into the store once applied."""
        loop = asyncio.get_event_loop()
        for group in groups:
            await loop.run_in_executor(
                None, self._client.patch_group, self._config.domain, group.id, group
            )
            self._stores.groups.apply(group)
            logger.debug("Added group to store", extra={"group_id": group.id})
        logger.info(
            "Created or updated groups", extra={"group_ids": [g.id for g in groups]}
        )

    def list_security_policy_ids(self) -> set[str]:
        """Owner uids that still have a policy or a group in NSX."""
        return self._stores.groups.list_index_values() | self._stores.policies.list_index_values()
