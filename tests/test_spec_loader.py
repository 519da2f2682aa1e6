"""Tests for manifest loading."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from nsx_mock import cr_manifest

from policy_controller.config import MAX_SPEC_FILE_SIZE_BYTES
from policy_controller.spec_loader import (
    SpecLoadError,
    load_security_policies,
    load_security_policies_file,
    parse_security_policy,
)


def write_manifests(path: Path, *docs: dict) -> Path:
    path.write_text(yaml.safe_dump_all(docs))
    return path


class TestLoadSecurityPolicies:
    """Tests for load_security_policies()."""

    def test_loads_sorted_files_and_multi_document(self, tmp_path: Path) -> None:
        write_manifests(tmp_path / "b.yaml", cr_manifest("web"), cr_manifest("db"))
        write_manifests(tmp_path / "a.yml", cr_manifest("cache"))
        (tmp_path / "notes.txt").write_text("ignored")

        policies = load_security_policies(tmp_path)

        assert [p.metadata.name for p in policies] == ["cache", "web", "db"]

    def test_missing_directory(self, tmp_path: Path) -> None:
        with pytest.raises(SpecLoadError, match="does not exist"):
            load_security_policies(tmp_path / "missing")

    def test_duplicate_uid(self, tmp_path: Path) -> None:
        write_manifests(tmp_path / "a.yaml", cr_manifest("web", uid="T1"))
        write_manifests(tmp_path / "b.yaml", cr_manifest("db", uid="T1"))

        with pytest.raises(SpecLoadError, match="Duplicate uid T1"):
            load_security_policies(tmp_path)

    def test_duplicate_namespace_and_name(self, tmp_path: Path) -> None:
        write_manifests(tmp_path / "a.yaml", cr_manifest("web", uid="T1"))
        write_manifests(tmp_path / "b.yaml", cr_manifest("web", uid="T2"))

        with pytest.raises(SpecLoadError, match="Duplicate SecurityPolicy default/web"):
            load_security_policies(tmp_path)

    def test_same_name_in_other_namespace(self, tmp_path: Path) -> None:
        write_manifests(
            tmp_path / "a.yaml",
            cr_manifest("web", uid="T1"),
            cr_manifest("web", namespace="shop", uid="T2"),
        )

        assert len(load_security_policies(tmp_path)) == 2

    def test_empty_directory(self, tmp_path: Path) -> None:
        assert load_security_policies(tmp_path) == []


class TestLoadFile:
    """Tests for single-file loading."""

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("metadata: [unclosed")

        with pytest.raises(SpecLoadError, match="Invalid YAML"):
            load_security_policies_file(path)

    def test_oversized_file(self, tmp_path: Path) -> None:
        path = tmp_path / "big.yaml"
        path.write_text("#" * (MAX_SPEC_FILE_SIZE_BYTES + 1))

        with pytest.raises(SpecLoadError, match="maximum size"):
            load_security_policies_file(path)

    def test_empty_documents_skipped(self, tmp_path: Path) -> None:
        path = tmp_path / "policy.yaml"
        path.write_text("---\n---\n" + yaml.safe_dump(cr_manifest("web")))

        (cr,) = load_security_policies_file(path)
        assert cr.metadata.name == "web"

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(SpecLoadError, match="not found"):
            load_security_policies_file(tmp_path / "nope.yaml")


class TestParseSecurityPolicy:
    """Tests for parse_security_policy()."""

    def test_validation_errors_name_the_field(self) -> None:
        data = cr_manifest("web")
        data["spec"]["priority"] = -1

        with pytest.raises(SpecLoadError) as exc_info:
            parse_security_policy(data, "web.yaml")

        message = str(exc_info.value)
        assert "web.yaml" in message
        assert "spec.priority" in message

    def test_non_mapping(self) -> None:
        with pytest.raises(SpecLoadError, match="mapping"):
            parse_security_policy(["not", "a", "mapping"])
