"""SecurityPolicy manifest loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .models import SecurityPolicyCR

logger = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml")


class SpecLoadError(Exception):
    """Raised when manifest loading or validation fails."""

    pass


def _read_documents(path: Path) -> list[Any]:
    if not path.exists():
        raise SpecLoadError(f"Manifest file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Manifest file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read manifest file {path}: {e}") from e

    try:
        return [doc for doc in yaml.safe_load_all(content) if doc is not None]
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e


def parse_security_policy(data: Any, source: str = "<memory>") -> SecurityPolicyCR:
    """Validate one manifest document."""
    if not isinstance(data, dict):
        raise SpecLoadError(f"Manifest must be a YAML mapping: {source}")

    try:
        return SecurityPolicyCR.model_validate(data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {source}:\n{error_list}") from e


def load_security_policies_file(path: Path) -> list[SecurityPolicyCR]:
    """Load every SecurityPolicy document from one (possibly multi-document) file."""
    return [
        parse_security_policy(doc, f"{path}[{i}]")
        for i, doc in enumerate(_read_documents(path))
    ]


def load_security_policies(specs_dir: Path) -> list[SecurityPolicyCR]:
    """Load all SecurityPolicy manifests under ``specs_dir``, sorted by file name.

    Raises:
        SpecLoadError: If the directory is missing, any file is invalid, or two
            manifests share a uid or a namespace/name.
    """
    if not specs_dir.is_dir():
        raise SpecLoadError(f"Specs directory does not exist: {specs_dir}")

    policies: list[SecurityPolicyCR] = []
    seen: dict[str, str] = {}
    seen_names: dict[tuple[str, str], str] = {}
    for path in sorted(p for p in specs_dir.iterdir() if p.suffix in MANIFEST_SUFFIXES):
        for cr in load_security_policies_file(path):
            if cr.uid in seen:
                raise SpecLoadError(f"Duplicate uid {cr.uid} in {path} and {seen[cr.uid]}")
            key = (cr.metadata.namespace, cr.metadata.name)
            if key in seen_names:
                raise SpecLoadError(
                    f"Duplicate SecurityPolicy {key[0]}/{key[1]} in {path} and {seen_names[key]}"
                )
            seen[cr.uid] = str(path)
            seen_names[key] = str(path)
            policies.append(cr)

    logger.info(
        "Loaded security policy manifests",
        extra={"specs_dir": str(specs_dir), "count": len(policies)},
    )
    return policies
