"""Synchronous client for the YugabyteDB Aeon public API.

Built on the azure-core HTTP pipeline:
- HeadersPolicy / UserAgentPolicy: identify the controller.
- RetryPolicy: transport-level retries for idempotent failures.
- AzureKeyCredentialPolicy: sends "Authorization: Bearer <api key>".

Every non-2xx response is classified into NotFoundError or ApiError and
connection failures become a retryable TransportError, so callers only ever
see ReconcileError subclasses.

The client holds no reconciliation logic. Reconcilers call it from a worker
thread (see ResourceReconciler.call) so the event loop never blocks.
"""

from __future__ import annotations

import logging
from typing import Any

from azure.core import PipelineClient
from azure.core.credentials import AzureKeyCredential
from azure.core.exceptions import ServiceRequestError, ServiceResponseError
from azure.core.pipeline.policies import (
    AzureKeyCredentialPolicy,
    HeadersPolicy,
    RetryPolicy,
    UserAgentPolicy,
)
from azure.core.rest import HttpRequest

from .classifier import (
    describe_request_failure,
    error_from_response,
    obfuscate_string,
    obfuscate_token,
    truncate_message,
)
from .config import Config
from .errors import TransportError

logger = logging.getLogger(__name__)

USER_AGENT = "ybm-controller/0.1.0"

# Safety bound on paginated listings
MAX_PAGES = 100


class YbmApiClient:
    """Thin REST binding; one method per endpoint the reconcilers use."""

    def __init__(self, config: Config) -> None:
        self._config = config
        self._base_url = config.base_url
        self._client: PipelineClient = PipelineClient(
            base_url=self._base_url,
            policies=[
                HeadersPolicy({"Accept": "application/json"}),
                UserAgentPolicy(user_agent=USER_AGENT),
                RetryPolicy(retry_total=config.http_retry_total),
                AzureKeyCredentialPolicy(
                    AzureKeyCredential(config.api_key), "Authorization", prefix="Bearer"
                ),
            ],
        )
        logger.debug(
            "API client configured",
            extra={"base_url": self._base_url, "api_key": obfuscate_string(config.api_key)},
        )

    def close(self) -> None:
        self._client.close()

    # =========================================================================
    # Transport
    # =========================================================================

    def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        title: str | None = None,
    ) -> Any:
        """Send one request and return the decoded body.

        Raises:
            TransportError: Connection or read failure (retryable).
            NotFoundError: 404.
            ApiError: Any other non-2xx status.
        """
        query = {k: v for k, v in (params or {}).items() if v is not None}
        request = HttpRequest(method, f"{self._base_url}{path}", params=query or None, json=json)

        logger.debug("API request", extra={"method": method, "path": path})
        try:
            response = self._client.send_request(
                request,
                connection_timeout=self._config.request_timeout_seconds,
                read_timeout=self._config.request_timeout_seconds,
            )
        except (ServiceRequestError, ServiceResponseError) as e:
            raise TransportError(
                truncate_message(obfuscate_token(str(e))), title=title or f"{method} {path} failed"
            ) from e

        if not 200 <= response.status_code < 300:
            body = response.text()
            logger.debug(
                describe_request_failure(
                    f"{response.status_code} {response.reason}",
                    f"{method} {request.url}",
                    body,
                )
            )
            raise error_from_response(response.status_code, body, title=title)

        if not response.content:
            return None
        return response.json()

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        title: str | None = None,
    ) -> Any:
        """Send one request and return the unwrapped "data" payload."""
        body = self._send(method, path, params=params, json=json, title=title)
        if isinstance(body, dict) and "data" in body:
            return body["data"]
        return body

    def _list(self, path: str, *, params: dict[str, Any] | None = None, title: str | None = None) -> list[Any]:
        """GET a listing, following continuation tokens."""
        items: list[Any] = []
        query = dict(params or {})
        for _ in range(MAX_PAGES):
            body = self._send("GET", path, params=query, title=title) or {}
            items.extend(body.get("data") or [])
            token = (body.get("_metadata") or {}).get("continuation_token")
            if not token:
                break
            query["continuation_token"] = token
        return items

    def _project_path(self, account_id: str, project_id: str) -> str:
        return f"/accounts/{account_id}/projects/{project_id}"

    # =========================================================================
    # Account, tracks, node configurations, tasks
    # =========================================================================

    def list_accounts(self) -> list[dict[str, Any]]:
        return self._list("/accounts", title="Unable to list accounts")

    def list_tracks(self, account_id: str) -> list[dict[str, Any]]:
        return self._list(f"/accounts/{account_id}/software/tracks", title="Unable to list tracks")

    def list_node_options(
        self, account_id: str, project_id: str, cloud: str, tier: str, region: str
    ) -> list[dict[str, Any]]:
        """Node configurations offered in one region."""
        data = self._request(
            "GET",
            f"{self._project_path(account_id, project_id)}/node_configurations",
            params={"cloud": cloud, "tier": tier, "regions": region},
            title="Unable to list node configurations",
        )
        return list((data or {}).get(region, []))

    def latest_task_state(
        self, account_id: str, project_id: str, entity_id: str, task_type: str
    ) -> str | None:
        """State of the newest task of a type for an entity, or None if there is none."""
        data = self._request(
            "GET",
            f"/accounts/{account_id}/tasks",
            params={
                "project_id": project_id,
                "entity_id": entity_id,
                "task_type": task_type,
                "limit": 1,
            },
            title="Unable to get task",
        )
        if not data:
            return None
        return data[0]["info"]["state"]

    # =========================================================================
    # Clusters
    # =========================================================================

    def _cluster_path(self, account_id: str, project_id: str, cluster_id: str) -> str:
        return f"{self._project_path(account_id, project_id)}/clusters/{cluster_id}"

    def create_cluster(self, account_id: str, project_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        return self._request(
            "POST",
            f"{self._project_path(account_id, project_id)}/clusters",
            json=payload,
            title="Unable to create cluster",
        )

    def get_cluster(self, account_id: str, project_id: str, cluster_id: str) -> dict[str, Any]:
        return self._request(
            "GET",
            self._cluster_path(account_id, project_id, cluster_id),
            title="Unable to read the state of the cluster",
        )

    def edit_cluster(
        self, account_id: str, project_id: str, cluster_id: str, spec: dict[str, Any]
    ) -> dict[str, Any]:
        return self._request(
            "PUT",
            self._cluster_path(account_id, project_id, cluster_id),
            json=spec,
            title="Unable to update cluster",
        )

    def delete_cluster(self, account_id: str, project_id: str, cluster_id: str) -> None:
        self._request(
            "DELETE",
            self._cluster_path(account_id, project_id, cluster_id),
            title="Unable to delete cluster",
        )

    def pause_cluster(self, account_id: str, project_id: str, cluster_id: str) -> None:
        self._request(
            "POST",
            f"{self._cluster_path(account_id, project_id, cluster_id)}/pause",
            title="Unable to pause cluster",
        )

    def resume_cluster(self, account_id: str, project_id: str, cluster_id: str) -> None:
        self._request(
            "POST",
            f"{self._cluster_path(account_id, project_id, cluster_id)}/resume",
            title="Unable to resume cluster",
        )

    def list_cluster_allow_lists(
        self, account_id: str, project_id: str, cluster_id: str
    ) -> list[dict[str, Any]]:
        return self._request(
            "GET",
            f"{self._cluster_path(account_id, project_id, cluster_id)}/allow-lists",
            title="Unable to read allow lists of the cluster",
        ) or []

    def set_cluster_allow_lists(
        self, account_id: str, project_id: str, cluster_id: str, allow_list_ids: list[str]
    ) -> None:
        self._request(
            "PUT",
            f"{self._cluster_path(account_id, project_id, cluster_id)}/allow-lists",
            json=allow_list_ids,
            title="Unable to assign allow list to cluster",
        )

    def get_cluster_cmk(self, account_id: str, project_id: str, cluster_id: str) -> dict[str, Any] | None:
        return self._request(
            "GET",
            f"{self._cluster_path(account_id, project_id, cluster_id)}/cmks",
            title="Unable to read CMK spec",
        )

    def edit_cluster_cmk(
        self, account_id: str, project_id: str, cluster_id: str, cmk: dict[str, Any]
    ) -> None:
        self._request(
            "PUT",
            f"{self._cluster_path(account_id, project_id, cluster_id)}/cmks",
            json=cmk,
            title="Unable to edit CMK",
        )

    def set_connection_pooling(
        self, account_id: str, project_id: str, cluster_id: str, operation: dict[str, Any]
    ) -> None:
        self._request(
            "POST",
            f"{self._cluster_path(account_id, project_id, cluster_id)}/connection-pooling",
            json=operation,
            title="Unable to change connection pooling",
        )

    def get_certificate(self) -> str:
        return self._request("GET", "/certificate", title="Unable to get cluster certificate")

    # =========================================================================
    # Backup schedules, backups, restores
    # =========================================================================

    def list_backup_schedules(
        self, account_id: str, project_id: str, cluster_id: str
    ) -> list[dict[str, Any]]:
        return self._list(
            f"{self._project_path(account_id, project_id)}/backup_schedules",
            params={"entity_id": cluster_id},
            title="Unable to fetch the backup schedule for the cluster",
        )

    def edit_backup_schedule(
        self, account_id: str, project_id: str, schedule_id: str, schedule: dict[str, Any]
    ) -> None:
        self._request(
            "PUT",
            f"{self._project_path(account_id, project_id)}/backup_schedules/{schedule_id}",
            json=schedule,
            title="Unable to modify the backup schedule",
        )

    def create_backup(self, account_id: str, project_id: str, spec: dict[str, Any]) -> dict[str, Any]:
        return self._request(
            "POST",
            f"{self._project_path(account_id, project_id)}/backups",
            json=spec,
            title="Unable to create backup",
        )

    def get_backup(self, account_id: str, project_id: str, backup_id: str) -> dict[str, Any]:
        return self._request(
            "GET",
            f"{self._project_path(account_id, project_id)}/backups/{backup_id}",
            title="Unable to read the state of the backup",
        )

    def list_backups(self, account_id: str, project_id: str, cluster_id: str) -> list[dict[str, Any]]:
        return self._list(
            f"{self._project_path(account_id, project_id)}/backups",
            params={"cluster_id": cluster_id},
            title="Unable to list backups",
        )

    def delete_backup(self, account_id: str, project_id: str, backup_id: str) -> None:
        self._request(
            "DELETE",
            f"{self._project_path(account_id, project_id)}/backups/{backup_id}",
            title="Unable to delete backup",
        )

    def restore_backup(
        self, account_id: str, project_id: str, backup_id: str, cluster_id: str
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            f"{self._project_path(account_id, project_id)}/restore",
            json={"backup_id": backup_id, "cluster_id": cluster_id},
            title="Unable to restore backup to the cluster",
        )

    def get_restore(self, account_id: str, project_id: str, restore_id: str) -> dict[str, Any]:
        return self._request(
            "GET",
            f"{self._project_path(account_id, project_id)}/restores/{restore_id}",
            title="Unable to read the state of the restore",
        )

    # =========================================================================
    # VPCs
    # =========================================================================

    def list_vpcs(self, account_id: str, project_id: str, name: str | None = None) -> list[dict[str, Any]]:
        return self._list(
            f"{self._project_path(account_id, project_id)}/network/vpcs",
            params={"name": name},
            title="Unable to list VPCs",
        )

    def create_vpc(self, account_id: str, project_id: str, spec: dict[str, Any]) -> dict[str, Any]:
        return self._request(
            "POST",
            f"{self._project_path(account_id, project_id)}/network/vpcs",
            json=spec,
            title="Unable to create VPC",
        )

    def get_vpc(self, account_id: str, project_id: str, vpc_id: str) -> dict[str, Any]:
        return self._request(
            "GET",
            f"{self._project_path(account_id, project_id)}/network/vpcs/{vpc_id}",
            title="Unable to read the state of the VPC",
        )

    def delete_vpc(self, account_id: str, project_id: str, vpc_id: str) -> None:
        self._request(
            "DELETE",
            f"{self._project_path(account_id, project_id)}/network/vpcs/{vpc_id}",
            title="Unable to delete VPC",
        )

    # =========================================================================
    # Allow lists
    # =========================================================================

    def list_allow_lists(self, account_id: str, project_id: str) -> list[dict[str, Any]]:
        return self._list(
            f"{self._project_path(account_id, project_id)}/allow_lists",
            title="Unable to list allow lists",
        )

    def create_allow_list(self, account_id: str, project_id: str, spec: dict[str, Any]) -> dict[str, Any]:
        return self._request(
            "POST",
            f"{self._project_path(account_id, project_id)}/allow_lists",
            json=spec,
            title="Unable to create allow list",
        )

    def get_allow_list(self, account_id: str, project_id: str, allow_list_id: str) -> dict[str, Any]:
        return self._request(
            "GET",
            f"{self._project_path(account_id, project_id)}/allow_lists/{allow_list_id}",
            title="Unable to read the state of the allow list",
        )

    def delete_allow_list(self, account_id: str, project_id: str, allow_list_id: str) -> None:
        self._request(
            "DELETE",
            f"{self._project_path(account_id, project_id)}/allow_lists/{allow_list_id}",
            title="Unable to delete allow list",
        )

    # =========================================================================
    # Read replicas
    # =========================================================================

    def _read_replica_path(self, account_id: str, project_id: str, cluster_id: str) -> str:
        return f"{self._cluster_path(account_id, project_id, cluster_id)}/read_replicas"

    def create_read_replicas(
        self, account_id: str, project_id: str, cluster_id: str, spec: dict[str, Any]
    ) -> None:
        self._request(
            "POST",
            self._read_replica_path(account_id, project_id, cluster_id),
            json=spec,
            title="Unable to create read replicas",
        )

    def get_read_replicas(self, account_id: str, project_id: str, cluster_id: str) -> dict[str, Any]:
        return self._request(
            "GET",
            self._read_replica_path(account_id, project_id, cluster_id),
            title="Unable to read the state of the read replicas",
        )

    def edit_read_replicas(
        self, account_id: str, project_id: str, cluster_id: str, spec: dict[str, Any]
    ) -> None:
        self._request(
            "PUT",
            self._read_replica_path(account_id, project_id, cluster_id),
            json=spec,
            title="Unable to update read replicas",
        )

    def delete_read_replicas(self, account_id: str, project_id: str, cluster_id: str) -> None:
        self._request(
            "DELETE",
            self._read_replica_path(account_id, project_id, cluster_id),
            title="Unable to delete read replicas",
        )

    # =========================================================================
    # Telemetry providers (integrations)
    # =========================================================================

    def list_telemetry_providers(self, account_id: str, project_id: str) -> list[dict[str, Any]]:
        return self._list(
            f"{self._project_path(account_id, project_id)}/telemetry_providers",
            title="Unable to list integrations",
        )

    def create_telemetry_provider(
        self, account_id: str, project_id: str, spec: dict[str, Any]
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            f"{self._project_path(account_id, project_id)}/telemetry_providers",
            json=spec,
            title="Unable to create integration",
        )

    def delete_telemetry_provider(self, account_id: str, project_id: str, config_id: str) -> None:
        self._request(
            "DELETE",
            f"{self._project_path(account_id, project_id)}/telemetry_providers/{config_id}",
            title="Unable to delete integration",
        )

    # =========================================================================
    # DB audit log exporter configs
    # =========================================================================

    def _audit_path(self, account_id: str, project_id: str, cluster_id: str) -> str:
        return f"{self._cluster_path(account_id, project_id, cluster_id)}/db-audit-log-exporter-configs"

    def list_audit_exporter_configs(
        self, account_id: str, project_id: str, cluster_id: str
    ) -> list[dict[str, Any]]:
        return self._list(
            self._audit_path(account_id, project_id, cluster_id),
            title="Unable to fetch DB audit logging configuration",
        )

    def associate_audit_exporter_config(
        self, account_id: str, project_id: str, cluster_id: str, spec: dict[str, Any]
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            self._audit_path(account_id, project_id, cluster_id),
            json=spec,
            title="Unable to enable DB audit logging",
        )

    def update_audit_exporter_config(
        self, account_id: str, project_id: str, cluster_id: str, config_id: str, spec: dict[str, Any]
    ) -> dict[str, Any]:
        return self._request(
            "PUT",
            f"{self._audit_path(account_id, project_id, cluster_id)}/{config_id}",
            json=spec,
            title="Unable to update DB audit logging",
        )

    def remove_audit_exporter_config(
        self, account_id: str, project_id: str, cluster_id: str, config_id: str
    ) -> None:
        self._request(
            "DELETE",
            f"{self._audit_path(account_id, project_id, cluster_id)}/{config_id}",
            title="Unable to disable DB audit logging",
        )
