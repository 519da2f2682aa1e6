"""Hierarchical patch body for the NSX policy API.

NSX realizes an ``Infra`` tree in one call. A security policy and its groups
live under a domain, and the policy's rules are sent as ``ChildRule``
children of the policy rather than in its ``rules`` field:

    Infra
    └── ChildResourceReference (Domain)
        ├── ChildSecurityPolicy
        │   └── ChildRule ...
        └── ChildGroup ...
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from .models import Group, NsxResource, SecurityPolicy


def _child(child_type: str, obj: NsxResource, body: dict[str, Any]) -> dict[str, Any]:
    return {
        "resource_type": f"Child{child_type}",
        child_type: body,
        "marked_for_delete": obj.is_marked_for_delete,
    }


def wrap_security_policy(policy: SecurityPolicy) -> dict[str, Any]:
    """Wrap a policy, moving its rules into ChildRule entries."""
    body = policy.to_nsx()
    body.pop("rules", None)
    body["children"] = [_child("Rule", rule, rule.to_nsx()) for rule in policy.rules]
    return _child("SecurityPolicy", policy, body)


def wrap_group(group: Group) -> dict[str, Any]:
    return _child("Group", group, group.to_nsx())


def wrap_hierarchy(
    policy: SecurityPolicy | None, groups: Sequence[Group], domain: str
) -> dict[str, Any]:
    """Build the Infra body for one policy and its groups.

    Groups follow the policy, in the given order. ``policy`` may be None when
    only groups are patched. Neither input is modified.
    """
    children = [wrap_security_policy(policy)] if policy is not None else []
    children.extend(wrap_group(group) for group in groups)
    return {
        "resource_type": "Infra",
        "children": [
            {
                "resource_type": "ChildResourceReference",
                "id": domain,
                "target_type": "Domain",
                "children": children,
            }
        ],
    }
