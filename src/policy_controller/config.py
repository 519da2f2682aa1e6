"""Configuration management with validation.

All settings come from environment variables and are validated at load
time so the controller refuses to start with a broken configuration.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Hierarchical patch semantics. These are fixed by the calling layer and are
# not runtime-configurable.
MARKED_FOR_DELETE = True
ENFORCE_REVISION_CHECK = False

# Tag scopes stamped on every backend object owned by this controller.
# The CR uid scope is the owner tag and the only join key between stores.
TAG_SCOPE_CLUSTER = "nsx-op/cluster"
TAG_SCOPE_NAMESPACE = "nsx-op/namespace"
TAG_SCOPE_SECURITY_POLICY_CR_NAME = "nsx-op/security_policy_cr_name"
TAG_SCOPE_SECURITY_POLICY_CR_UID = "nsx-op/security_policy_cr_uid"

# Configuration constants with documented bounds
DEFAULT_RECONCILE_INTERVAL_SECONDS = 60
MIN_RECONCILE_INTERVAL_SECONDS = 10
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_REQUEST_TIMEOUT_SECONDS = 30
DEFAULT_MAX_RETRIES = 3
MAX_RETRIES_LIMIT = 10

DEFAULT_SYNC_PAGE_SIZE = 1000
MAX_SYNC_PAGE_SIZE = 1000  # NSX search API hard limit

DEFAULT_NSX_DOMAIN = "default"

# Input validation limits
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest
MAX_CLUSTER_NAME_LENGTH = 63
MAX_NSX_ID_LENGTH = 255

VALID_CLUSTER_NAME_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"
VALID_DOMAIN_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_-]*$"


@dataclass(frozen=True)
class Config:
    """Controller configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    nsx_manager_url: str
    cluster: str

    # NSX placement
    domain: str = DEFAULT_NSX_DOMAIN

    # Credentials (basic auth). Either both or neither.
    nsx_username: str | None = None
    nsx_password: str | None = field(default=None, repr=False)

    # Paths
    specs_dir: Path = field(default_factory=lambda: Path("/specs"))

    # Timing
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS

    # Transport
    max_retries: int = DEFAULT_MAX_RETRIES
    verify_ssl: bool = True
    sync_page_size: int = DEFAULT_SYNC_PAGE_SIZE

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.nsx_manager_url:
            errors.append("NSX_MANAGER_URL is required")
        elif not self.nsx_manager_url.startswith(("http://", "https://")):
            errors.append(f"NSX_MANAGER_URL must be an http(s) URL: {self.nsx_manager_url}")

        if not self.cluster:
            errors.append("CLUSTER_NAME is required")
        elif len(self.cluster) > MAX_CLUSTER_NAME_LENGTH:
            errors.append(f"CLUSTER_NAME exceeds maximum length of {MAX_CLUSTER_NAME_LENGTH}")
        elif not re.match(VALID_CLUSTER_NAME_PATTERN, self.cluster):
            errors.append(
                f"CLUSTER_NAME must match pattern {VALID_CLUSTER_NAME_PATTERN}: {self.cluster}"
            )

        if not re.match(VALID_DOMAIN_PATTERN, self.domain or ""):
            errors.append(f"NSX_DOMAIN must match pattern {VALID_DOMAIN_PATTERN}: {self.domain}")

        if bool(self.nsx_username) != bool(self.nsx_password):
            errors.append("NSX_USERNAME and NSX_PASSWORD must be set together")

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if self.request_timeout_seconds < 1:
            errors.append("NSX_REQUEST_TIMEOUT must be at least 1 second")

        if not (0 <= self.max_retries <= MAX_RETRIES_LIMIT):
            errors.append(f"NSX_MAX_RETRIES must be between 0 and {MAX_RETRIES_LIMIT}")

        if not (1 <= self.sync_page_size <= MAX_SYNC_PAGE_SIZE):
            errors.append(f"SYNC_PAGE_SIZE must be between 1 and {MAX_SYNC_PAGE_SIZE}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def policy_api_base(self) -> str:
        """Base URL of the NSX policy API."""
        return self.nsx_manager_url.rstrip("/") + "/policy/api/v1"

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            NSX_MANAGER_URL: NSX manager endpoint, e.g. https://nsx.example.com
            CLUSTER_NAME: Cluster name stamped on every owned NSX object
            NSX_DOMAIN: NSX policy domain (default: default)
            NSX_USERNAME / NSX_PASSWORD: Basic auth credentials (optional)
            SPECS_DIR: Directory of SecurityPolicy manifests (default: /specs)
            RECONCILE_INTERVAL: Seconds between reconcile cycles (default: 60)
            NSX_REQUEST_TIMEOUT: Per-request timeout in seconds (default: 30)
            NSX_MAX_RETRIES: Transport retries per request (default: 3)
            NSX_VERIFY_SSL: Verify the manager's certificate (default: true)
            SYNC_PAGE_SIZE: Page size for the initial listing (default: 1000)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            nsx_manager_url=os.environ.get("NSX_MANAGER_URL", ""),
            cluster=os.environ.get("CLUSTER_NAME", ""),
            domain=os.environ.get("NSX_DOMAIN", DEFAULT_NSX_DOMAIN),
            nsx_username=os.environ.get("NSX_USERNAME") or None,
            nsx_password=os.environ.get("NSX_PASSWORD") or None,
            specs_dir=Path(os.environ.get("SPECS_DIR", "/specs")),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            request_timeout_seconds=get_int("NSX_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS),
            max_retries=get_int("NSX_MAX_RETRIES", DEFAULT_MAX_RETRIES),
            verify_ssl=get_bool("NSX_VERIFY_SSL", True),
            sync_page_size=get_int("SYNC_PAGE_SIZE", DEFAULT_SYNC_PAGE_SIZE),
        )
