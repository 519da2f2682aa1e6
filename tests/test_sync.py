"""Tests for the concurrent initial sync."""

from __future__ import annotations

import asyncio
import time

import pytest
from azure.core.exceptions import HttpResponseError
from nsx_mock import MockNsxClient, MockNsxState, failing_listing

from policy_controller.sync import SecurityPolicyStores, SyncError, fetch_all, sync_stores

CLUSTER_TAG = {"scope": "nsx-op/cluster", "tag": "test-cluster"}


def owned(obj_id: str, owner: str, **fields: object) -> dict:
    return {
        "id": obj_id,
        "tags": [CLUSTER_TAG, {"scope": "nsx-op/security_policy_cr_uid", "tag": owner}],
        **fields,
    }


@pytest.fixture
def seeded_state() -> MockNsxState:
    state = MockNsxState()
    state.seed("SecurityPolicy", owned("sp_default_web", "T1"))
    state.seed("Group", owned("g1", "T1"))
    state.seed("Group", owned("g2", "T2"))
    state.seed("Rule", owned("r1", "T1"))
    state.seed("Rule", owned("r2", "T1"))
    # Another cluster's object is never listed
    state.seed("Group", {"id": "foreign", "tags": [{"scope": "nsx-op/cluster", "tag": "other"}]})
    return state


class TestSyncStores:
    """Tests for sync_stores()."""

    @pytest.mark.asyncio
    async def test_populates_all_stores(self, seeded_state: MockNsxState) -> None:
        stores = SecurityPolicyStores()

        await sync_stores(MockNsxClient(seeded_state), stores)

        assert stores.policies.get("sp_default_web") is not None
        assert {g.id for g in stores.groups.list_all()} == {"g1", "g2"}
        assert [r.id for r in stores.rules.list_by_index("T1")] == ["r1", "r2"]
        assert stores.groups.list_index_values() == {"T1", "T2"}

    @pytest.mark.asyncio
    async def test_listings_run_concurrently(self, seeded_state: MockNsxState) -> None:
        client = MockNsxClient(
            seeded_state, list_delays={"Group": 0.3, "SecurityPolicy": 0.3, "Rule": 0.3}
        )

        start = time.monotonic()
        await sync_stores(client, SecurityPolicyStores())

        assert time.monotonic() - start < 0.8

    @pytest.mark.asyncio
    async def test_paginated_listing(self, seeded_state: MockNsxState) -> None:
        for i in range(5):
            seeded_state.seed("Rule", owned(f"extra-{i}", "T3"))
        client = MockNsxClient(seeded_state, page_size=2)
        stores = SecurityPolicyStores()

        await sync_stores(client, stores)

        assert len(stores.rules) == 7
        assert client.list_calls["Rule"] == 4

    @pytest.mark.asyncio
    async def test_skips_objects_marked_for_delete(self, seeded_state: MockNsxState) -> None:
        seeded_state.seed("Group", owned("dying", "T9", marked_for_delete=True))
        stores = SecurityPolicyStores()

        await sync_stores(MockNsxClient(seeded_state), stores)

        assert stores.groups.get("dying") is None
        assert "T9" not in stores.groups.list_index_values()

    @pytest.mark.asyncio
    async def test_first_failure_is_raised(self, seeded_state: MockNsxState) -> None:
        client = MockNsxClient(seeded_state, list_failures={"Group": failing_listing("boom")})

        with pytest.raises(SyncError) as exc_info:
            await sync_stores(client, SecurityPolicyStores())

        assert exc_info.value.resource_type == "Group"
        assert "boom" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, HttpResponseError)

    @pytest.mark.asyncio
    async def test_failure_cancels_remaining_listings(self, seeded_state: MockNsxState) -> None:
        for i in range(3):
            seeded_state.seed("Rule", owned(f"extra-{i}", "T3"))
        client = MockNsxClient(
            seeded_state,
            page_size=1,
            list_failures={"Group": failing_listing()},
            list_delays={"Rule": 0.2},
        )
        stores = SecurityPolicyStores()

        with pytest.raises(SyncError):
            await sync_stores(client, stores)

        # The in-flight page may finish in its thread, but nothing is written
        # and no further page is requested once the listing was cancelled.
        await asyncio.sleep(0.5)
        assert len(stores.rules) == 0
        assert client.list_calls["Rule"] <= 1

    @pytest.mark.asyncio
    async def test_failed_kind_leaves_its_store_empty(self, seeded_state: MockNsxState) -> None:
        client = MockNsxClient(seeded_state, list_failures={"Rule": failing_listing()})
        stores = SecurityPolicyStores()

        with pytest.raises(SyncError) as exc_info:
            await sync_stores(client, stores)

        assert exc_info.value.resource_type == "Rule"
        assert len(stores.rules) == 0


class TestFetchAll:
    """Tests for fetch_all()."""

    @pytest.mark.asyncio
    async def test_reads_every_page(self, seeded_state: MockNsxState) -> None:
        client = MockNsxClient(seeded_state, page_size=1)

        groups = await fetch_all(client, "Group")

        assert [g.id for g in groups] == ["g1", "g2"]
        assert client.list_calls["Group"] == 2
