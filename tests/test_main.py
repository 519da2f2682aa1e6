"""Tests for logging setup and controller startup."""

from __future__ import annotations

import json
import logging
import os
from unittest.mock import patch

import pytest
from nsx_mock import MockNsxClient, failing_listing, make_config

from policy_controller import main as main_module
from policy_controller.main import JsonFormatter, main, run_controller


def make_record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord("policy_controller.test", logging.INFO, __file__, 1, "hello %s", ("nsx",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJsonFormatter:
    """Tests for JsonFormatter."""

    def test_includes_extra_fields(self) -> None:
        output = json.loads(JsonFormatter().format(make_record(policy_id="sp_default_web")))

        assert output["message"] == "hello nsx"
        assert output["level"] == "INFO"
        assert output["logger"] == "policy_controller.test"
        assert output["policy_id"] == "sp_default_web"
        assert output["timestamp"].endswith("Z")
        assert "msg" not in output

    def test_non_serializable_values(self) -> None:
        output = json.loads(JsonFormatter().format(make_record(ids={"T1"})))
        assert output["ids"] == "{'T1'}"


class TestStartup:
    """Tests for controller startup."""

    @pytest.mark.asyncio
    async def test_sync_failure_exits_nonzero(self) -> None:
        client = MockNsxClient(list_failures={"Group": failing_listing()})

        with patch.object(main_module, "NsxClient", return_value=client):
            code = await run_controller(make_config(), logging.getLogger("test"))

        assert code == 1
        assert client.closed

    @pytest.mark.asyncio
    async def test_configuration_error_exits_nonzero(self) -> None:
        with patch.dict(os.environ, {}, clear=True), patch.object(main_module, "setup_logging"):
            assert await main() == 1
