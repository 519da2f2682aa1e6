"""NSX API Mock for Integration Testing.

This module provides an in-memory stand-in for the NSX policy API so the
controller can be tested without an NSX manager.

Key Features:
- In-memory state for groups, security policies and rules
- Hierarchical (Infra) patch realization, including cascading policy deletes
- Search-style listings with cursor pagination
- Error injection and per-kind listing delays

Usage:
    from nsx_mock import MockNsxClient, make_config, make_cr

    client = MockNsxClient()
    service = await SecurityPolicyService.initialize(client, make_config())
    await service.create_or_update_security_policy(make_cr("web"))

    assert client.state.patch_count == 1
"""

from .client import MockNsxClient, failing_listing
from .factories import DEFAULT_CLUSTER, cr_manifest, make_config, make_cr, web_rule
from .state import MockNsxState, PatchRecord

__all__ = [
    "DEFAULT_CLUSTER",
    "MockNsxClient",
    "MockNsxState",
    "PatchRecord",
    "cr_manifest",
    "failing_listing",
    "make_config",
    "make_cr",
    "web_rule",
]
