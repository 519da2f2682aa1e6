"""NSX policy API client built on the azure-core HTTP pipeline.

The pipeline supplies headers, user agent and transport-level retries;
non-2xx responses surface as ``azure.core.exceptions.HttpResponseError`` and
connection failures as ``ServiceRequestError``. Both are propagated to the
caller unchanged.

All calls are blocking. Async callers run them in an executor.
"""

from __future__ import annotations

import base64
import logging
from typing import Any
from urllib.parse import quote

from azure.core import PipelineClient
from azure.core.pipeline.policies import HeadersPolicy, RetryPolicy, UserAgentPolicy
from azure.core.rest import HttpRequest, HttpResponse

from .config import TAG_SCOPE_CLUSTER, Config
from .models import RESOURCE_KINDS, Group, NsxResource

logger = logging.getLogger(__name__)

USER_AGENT = "nsx-policy-controller/0.1.0"


def escape_query_value(value: str) -> str:
    """Escape characters with a meaning in the NSX search query syntax."""
    return value.replace("/", "\\/")


class NsxClient:
    """Blocking client for the handful of NSX policy API calls the controller needs.

    Calls:
        list_page / list_all: search API, one object kind at a time, scoped to
            objects tagged with this cluster.
        patch_infra: hierarchical patch of an Infra tree.
        patch_group: patch of a single group.
    """

    def __init__(self, config: Config, pipeline_client: PipelineClient | None = None) -> None:
        self._config = config
        if pipeline_client is None:
            headers = {"Accept": "application/json"}
            if config.nsx_username and config.nsx_password:
                token = base64.b64encode(
                    f"{config.nsx_username}:{config.nsx_password}".encode()
                ).decode("ascii")
                headers["Authorization"] = f"Basic {token}"
            pipeline_client = PipelineClient(
                base_url=config.policy_api_base,
                policies=[
                    HeadersPolicy(base_headers=headers),
                    UserAgentPolicy(base_user_agent=USER_AGENT),
                    RetryPolicy(retry_total=config.max_retries),
                ],
            )
        self._client = pipeline_client

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> NsxClient:
        return self

    def __exit__(self, *exc_details: Any) -> None:
        self.close()

    def _send(self, request: HttpRequest) -> HttpResponse:
        response = self._client.send_request(
            request,
            connection_timeout=self._config.request_timeout_seconds,
            read_timeout=self._config.request_timeout_seconds,
            connection_verify=self._config.verify_ssl,
        )
        response.raise_for_status()
        return response

    def search_query(self, resource_type: str) -> str:
        return (
            f"resource_type:{resource_type}"
            f" AND tags.scope:{escape_query_value(TAG_SCOPE_CLUSTER)}"
            f" AND tags.tag:{escape_query_value(self._config.cluster)}"
        )

    def list_page(
        self, resource_type: str, cursor: str | None = None
    ) -> tuple[list[NsxResource], str | None]:
        """Fetch one page of objects of ``resource_type``.

        Returns:
            The parsed objects and the cursor of the next page (None on the last page).
        """
        model = RESOURCE_KINDS.get(resource_type)
        if model is None:
            raise ValueError(f"Unsupported resource type: {resource_type}")

        params: dict[str, Any] = {
            "query": self.search_query(resource_type),
            "page_size": self._config.sync_page_size,
        }
        if cursor:
            params["cursor"] = cursor
        request = HttpRequest("GET", self._client.format_url("/search/query"), params=params)
        data = self._send(request).json()

        results = data.get("results") or []
        objects = [model.model_validate(item) for item in results]
        next_cursor = data.get("cursor") if results else None
        return objects, next_cursor or None

    def list_all(self, resource_type: str) -> list[NsxResource]:
        objects: list[NsxResource] = []
        cursor: str | None = None
        while True:
            page, cursor = self.list_page(resource_type, cursor)
            objects.extend(page)
            if cursor is None:
                return objects

    def patch_infra(self, infra: dict[str, Any], enforce_revision_check: bool) -> None:
        """Apply a hierarchical Infra body in one call."""
        request = HttpRequest(
            "PATCH",
            self._client.format_url("/infra"),
            params={"enforce_revision_check": str(enforce_revision_check).lower()},
            json=infra,
        )
        self._send(request)
        logger.debug("Patched infra", extra={"enforce_revision_check": enforce_revision_check})

    def patch_group(self, domain: str, group_id: str, group: Group) -> None:
        url = self._client.format_url(
            f"/infra/domains/{quote(domain, safe='')}/groups/{quote(group_id, safe='')}"
        )
        self._send(HttpRequest("PATCH", url, json=group.to_nsx()))
