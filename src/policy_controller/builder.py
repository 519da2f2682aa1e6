"""Translate a SecurityPolicy custom resource into NSX objects.

The builder is a pure function of its inputs. NSX ids derive from the
custom resource's namespace and name (and, for rules and groups, from the
rule's name or position), never from content, so re-creating a custom
resource with the same name reuses the same NSX objects.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence
from typing import Any

from .config import (
    MAX_NSX_ID_LENGTH,
    TAG_SCOPE_CLUSTER,
    TAG_SCOPE_NAMESPACE,
    TAG_SCOPE_SECURITY_POLICY_CR_NAME,
    TAG_SCOPE_SECURITY_POLICY_CR_UID,
)
from .models import (
    Group,
    Rule,
    SecurityPolicy,
    SecurityPolicyCR,
    SecurityPolicyPeer,
    SecurityPolicyPort,
    SecurityPolicyRule,
    Tag,
)

logger = logging.getLogger(__name__)

SECURITY_POLICY_ID_PREFIX = "sp"

# Custom resource values mapped to NSX enums
ACTION_MAP = {"allow": "ALLOW", "drop": "DROP", "reject": "REJECT"}
DIRECTION_MAP = {"in": "IN", "ingress": "IN", "out": "OUT", "egress": "OUT"}

MEMBER_TYPE_POD = "SegmentPort"
MEMBER_TYPE_VM = "VirtualMachine"


class BuildError(Exception):
    """Raised when a custom resource cannot be translated to NSX objects."""

    pass


def security_policy_id(namespace: str, name: str) -> str:
    return f"{SECURITY_POLICY_ID_PREFIX}_{namespace}_{name}"


def group_path(domain: str, group_id: str) -> str:
    return f"/infra/domains/{domain}/groups/{group_id}"


def basic_tags(cr: SecurityPolicyCR, cluster: str) -> list[Tag]:
    """Tags stamped on every object built for ``cr``; the last one is the owner tag."""
    return [
        Tag(scope=TAG_SCOPE_CLUSTER, tag=cluster),
        Tag(scope=TAG_SCOPE_NAMESPACE, tag=cr.metadata.namespace),
        Tag(scope=TAG_SCOPE_SECURITY_POLICY_CR_NAME, tag=cr.metadata.name),
        Tag(scope=TAG_SCOPE_SECURITY_POLICY_CR_UID, tag=cr.uid),
    ]


def _check_id(obj_id: str) -> str:
    if len(obj_id) > MAX_NSX_ID_LENGTH:
        raise BuildError(f"NSX id exceeds {MAX_NSX_ID_LENGTH} characters: {obj_id}")
    return obj_id


def _check_unique(kind: str, ids: Sequence[str], cr: SecurityPolicyCR) -> None:
    duplicates = sorted(i for i, count in Counter(ids).items() if count > 1)
    if duplicates:
        raise BuildError(
            f"{kind} ids collide in {cr.metadata.namespace}/{cr.metadata.name}: {duplicates}"
        )


def _condition(member_type: str, key: str, value: str) -> dict[str, Any]:
    return {
        "resource_type": "Condition",
        "member_type": member_type,
        "key": "Tag",
        "operator": "EQUALS",
        "value": f"{key}|{value}",
    }


def _conjunction(operator: str) -> dict[str, Any]:
    return {"resource_type": "ConjunctionOperator", "conjunction_operator": operator}


def _join(items: Sequence[dict[str, Any]], operator: str) -> list[dict[str, Any]]:
    joined: list[dict[str, Any]] = []
    for i, item in enumerate(items):
        if i:
            joined.append(_conjunction(operator))
        joined.append(item)
    return joined


def _peer_conditions(peer: SecurityPolicyPeer, namespace: str) -> list[dict[str, Any]]:
    """Tag conditions selecting the workloads of one peer (ANDed together)."""
    if peer.pod_selector is not None and peer.vm_selector is not None:
        raise BuildError("a peer must set exactly one of podSelector or vmSelector")
    if peer.pod_selector is not None:
        # Pod selectors never cross the custom resource's namespace.
        conditions = [_condition(MEMBER_TYPE_POD, TAG_SCOPE_NAMESPACE, namespace)]
        conditions.extend(
            _condition(MEMBER_TYPE_POD, k, v)
            for k, v in sorted(peer.pod_selector.match_labels.items())
        )
        return conditions
    if peer.vm_selector is not None:
        if not peer.vm_selector.match_labels:
            raise BuildError("vmSelector requires at least one label")
        return [
            _condition(MEMBER_TYPE_VM, k, v)
            for k, v in sorted(peer.vm_selector.match_labels.items())
        ]
    raise BuildError("a peer must set podSelector or vmSelector")


def build_expression(peers: Sequence[SecurityPolicyPeer], namespace: str) -> list[dict[str, Any]]:
    """Membership expression: one nested AND-expression per peer, ORed together."""
    nested = [
        {
            "resource_type": "NestedExpression",
            "expressions": _join(_peer_conditions(peer, namespace), "AND"),
        }
        for peer in peers
    ]
    return _join(nested, "OR")


def _build_group(
    group_id: str,
    peers: Sequence[SecurityPolicyPeer],
    cr: SecurityPolicyCR,
    tags: list[Tag],
) -> Group:
    return Group(
        id=_check_id(group_id),
        display_name=group_id,
        expression=build_expression(peers, cr.metadata.namespace),
        tags=list(tags),
    )


def build_service_entries(rule_id: str, ports: Sequence[SecurityPolicyPort]) -> list[dict[str, Any]]:
    entries: list[dict[str, Any]] = []
    for i, port in enumerate(ports):
        if port.end_port is not None and port.port is None:
            raise BuildError(f"rule {rule_id}: endPort requires port")
        if port.end_port is not None and port.port is not None and port.end_port < port.port:
            raise BuildError(f"rule {rule_id}: endPort {port.end_port} is below port {port.port}")
        if port.port is None:
            destination_ports: list[str] = []
        elif port.end_port is None or port.end_port == port.port:
            destination_ports = [str(port.port)]
        else:
            destination_ports = [f"{port.port}-{port.end_port}"]
        entries.append(
            {
                "resource_type": "L4PortSetServiceEntry",
                "id": f"{rule_id}_port_{i}",
                "l4_protocol": port.protocol,
                "destination_ports": destination_ports,
            }
        )
    return entries


def _rule_id(policy_id: str, rule: SecurityPolicyRule, index: int) -> str:
    suffix = rule.name if rule.name else str(index)
    return _check_id(f"{policy_id}_{suffix}")


def _build_rule(
    policy_id: str,
    index: int,
    rule: SecurityPolicyRule,
    cr: SecurityPolicyCR,
    domain: str,
    tags: list[Tag],
) -> tuple[Rule, list[Group]]:
    rule_id = _rule_id(policy_id, rule, index)
    groups: list[Group] = []

    def peer_group(suffix: str, peers: Sequence[SecurityPolicyPeer]) -> list[str]:
        if not peers:
            return ["ANY"]
        group = _build_group(f"{rule_id}_{suffix}", peers, cr, tags)
        groups.append(group)
        return [group_path(domain, group.id)]

    scope = peer_group("scope", rule.applied_to)
    sources = peer_group("src", rule.sources)
    destinations = peer_group("dst", rule.destinations)

    nsx_rule = Rule(
        id=rule_id,
        display_name=rule.name or f"{cr.metadata.name}-{index}",
        action=ACTION_MAP[rule.action],
        direction=DIRECTION_MAP[rule.direction],
        sequence_number=index,
        source_groups=sources,
        destination_groups=destinations,
        service_entries=build_service_entries(rule_id, rule.ports),
        scope=scope,
        tags=list(tags),
    )
    return nsx_rule, groups


def build_security_policy(
    cr: SecurityPolicyCR, cluster: str, domain: str
) -> tuple[SecurityPolicy, list[Group]]:
    """Build the NSX security policy (with rules) and the groups it references.

    Raises:
        BuildError: If the custom resource cannot be translated.
    """
    names = [r.name for r in cr.spec.rules if r.name]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise BuildError(f"duplicate rule names in {cr.metadata.namespace}/{cr.metadata.name}: {duplicates}")

    policy_id = _check_id(security_policy_id(cr.metadata.namespace, cr.metadata.name))
    tags = basic_tags(cr, cluster)
    groups: list[Group] = []

    scope: list[str] = []
    if cr.spec.applied_to:
        scope_group = _build_group(f"{policy_id}_scope", cr.spec.applied_to, cr, tags)
        groups.append(scope_group)
        scope = [group_path(domain, scope_group.id)]

    rules: list[Rule] = []
    for index, rule in enumerate(cr.spec.rules):
        nsx_rule, rule_groups = _build_rule(policy_id, index, rule, cr, domain, tags)
        rules.append(nsx_rule)
        groups.extend(rule_groups)

    # A rule named "1" and the unnamed rule at index 1 map to the same id.
    _check_unique("rule", [r.id for r in rules], cr)
    _check_unique("group", [g.id for g in groups], cr)

    policy = SecurityPolicy(
        id=policy_id,
        display_name=f"{cr.metadata.namespace}-{cr.metadata.name}",
        sequence_number=cr.spec.priority,
        scope=scope,
        rules=rules,
        tags=list(tags),
    )
    logger.debug(
        "Built security policy",
        extra={"policy_id": policy_id, "rules": len(rules), "groups": len(groups)},
    )
    return policy, groups
