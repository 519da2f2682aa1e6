"""Pydantic models for the SecurityPolicy custom resource and NSX objects.

These models provide:
1. Type-safe parsing of SecurityPolicy manifests (camelCase, Kubernetes style)
2. Typed NSX policy objects (snake_case, as the NSX REST API speaks them)
3. Owner tag lookup, the only join key between the local stores
"""

from __future__ import annotations

from typing import Annotated, Any, ClassVar

from pydantic import BaseModel, Field, field_validator

from .config import TAG_SCOPE_SECURITY_POLICY_CR_UID

# =============================================================================
# SecurityPolicy custom resource
# =============================================================================

VALID_ACTIONS = {"allow", "drop", "reject"}
VALID_DIRECTIONS = {"in", "ingress", "out", "egress"}
VALID_PROTOCOLS = {"TCP", "UDP", "SCTP"}


class ObjectMeta(BaseModel):
    """Subset of Kubernetes object metadata the controller relies on."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=253)]
    namespace: Annotated[str, Field(min_length=1, max_length=63)] = "default"
    uid: Annotated[str, Field(min_length=1)]


class LabelSelector(BaseModel):
    """Equality-based label selector."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    match_labels: dict[str, str] = Field(default_factory=dict, alias="matchLabels")


class SecurityPolicyPeer(BaseModel):
    """A set of workloads, selected by pod labels (within the namespace) or VM labels."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    pod_selector: LabelSelector | None = Field(None, alias="podSelector")
    vm_selector: LabelSelector | None = Field(None, alias="vmSelector")


class SecurityPolicyPort(BaseModel):
    """A port or port range for one L4 protocol."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    protocol: str = "TCP"
    port: int | None = Field(None, ge=1, le=65535)
    end_port: int | None = Field(None, alias="endPort", ge=1, le=65535)

    @field_validator("protocol")
    @classmethod
    def validate_protocol(cls, v: str) -> str:
        v = v.upper()
        if v not in VALID_PROTOCOLS:
            raise ValueError(f"protocol must be one of {sorted(VALID_PROTOCOLS)}")
        return v


class SecurityPolicyRule(BaseModel):
    """A single firewall rule of a SecurityPolicy."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str | None = None
    action: str
    direction: str
    applied_to: list[SecurityPolicyPeer] = Field(default_factory=list, alias="appliedTo")
    sources: list[SecurityPolicyPeer] = Field(default_factory=list)
    destinations: list[SecurityPolicyPeer] = Field(default_factory=list)
    ports: list[SecurityPolicyPort] = Field(default_factory=list)

    @field_validator("action")
    @classmethod
    def validate_action(cls, v: str) -> str:
        v = v.lower()
        if v not in VALID_ACTIONS:
            raise ValueError(f"action must be one of {sorted(VALID_ACTIONS)}")
        return v

    @field_validator("direction")
    @classmethod
    def validate_direction(cls, v: str) -> str:
        v = v.lower()
        if v not in VALID_DIRECTIONS:
            raise ValueError(f"direction must be one of {sorted(VALID_DIRECTIONS)}")
        return v


class SecurityPolicySpec(BaseModel):
    """Desired state of a SecurityPolicy."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    priority: Annotated[int, Field(ge=0, le=1000)] = 0
    applied_to: list[SecurityPolicyPeer] = Field(default_factory=list, alias="appliedTo")
    rules: list[SecurityPolicyRule] = Field(default_factory=list)


class SecurityPolicyCR(BaseModel):
    """The SecurityPolicy custom resource as stored in the cluster."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    api_version: str = Field("nsx.vmware.com/v1alpha1", alias="apiVersion")
    kind: str = "SecurityPolicy"
    metadata: ObjectMeta
    spec: SecurityPolicySpec = Field(default_factory=SecurityPolicySpec)

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        if v != "SecurityPolicy":
            raise ValueError("kind must be SecurityPolicy")
        return v

    @property
    def uid(self) -> str:
        return self.metadata.uid


# =============================================================================
# NSX policy objects
# =============================================================================


class Tag(BaseModel):
    """NSX tag: a (scope, tag) pair."""

    model_config = {"extra": "ignore", "frozen": True}

    scope: str
    tag: str


class NsxResource(BaseModel):
    """Fields common to every NSX policy object mirrored locally."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    # Fields owned by NSX or by the patch protocol, never by the desired state.
    SYSTEM_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {"revision", "path", "parent_path", "marked_for_delete"}
    )

    id: Annotated[str, Field(min_length=1)]
    display_name: str | None = None
    resource_type: str
    tags: list[Tag] = Field(default_factory=list)
    marked_for_delete: bool | None = None
    revision: int | None = Field(None, alias="_revision")
    path: str | None = None
    parent_path: str | None = None

    def tag_value(self, scope: str) -> str | None:
        """Return the value of the first tag with the given scope."""
        for tag in self.tags:
            if tag.scope == scope:
                return tag.tag
        return None

    @property
    def owner(self) -> str | None:
        """UID of the owning SecurityPolicy custom resource."""
        return self.tag_value(TAG_SCOPE_SECURITY_POLICY_CR_UID)

    @property
    def is_marked_for_delete(self) -> bool:
        return bool(self.marked_for_delete)

    def to_nsx(self) -> dict[str, Any]:
        """Serialize to the NSX REST representation."""
        return self.model_dump(by_alias=True, exclude_none=True)


class Group(NsxResource):
    """NSX group; membership is a list of Condition/ConjunctionOperator dicts."""

    resource_type: str = "Group"
    expression: list[dict[str, Any]] = Field(default_factory=list)


class Rule(NsxResource):
    """NSX firewall rule; lives under a SecurityPolicy."""

    resource_type: str = "Rule"
    action: str = "ALLOW"
    direction: str = "IN_OUT"
    sequence_number: int = 0
    ip_protocol: str = "IPV4_IPV6"
    source_groups: list[str] = Field(default_factory=lambda: ["ANY"])
    destination_groups: list[str] = Field(default_factory=lambda: ["ANY"])
    services: list[str] = Field(default_factory=lambda: ["ANY"])
    service_entries: list[dict[str, Any]] = Field(default_factory=list)
    scope: list[str] = Field(default_factory=lambda: ["ANY"])
    logged: bool = False


class SecurityPolicy(NsxResource):
    """NSX security policy with its rules embedded."""

    SYSTEM_FIELDS: ClassVar[frozenset[str]] = NsxResource.SYSTEM_FIELDS | {"rules"}

    resource_type: str = "SecurityPolicy"
    category: str = "Application"
    sequence_number: int = 0
    scope: list[str] = Field(default_factory=list)
    rules: list[Rule] = Field(default_factory=list)


# Resource types listed at startup, in the order they are reported.
RESOURCE_KINDS: dict[str, type[NsxResource]] = {
    "Group": Group,
    "SecurityPolicy": SecurityPolicy,
    "Rule": Rule,
}
