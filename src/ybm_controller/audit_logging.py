"""Database audit log export reconciler.

A cluster has at most one audit log exporter config, and the service offers no
direct GET for it: reads list the cluster's configs and take the first.
"""

from __future__ import annotations

import logging

from .base import ResourceReconciler, Scope, SubmitHook
from .config import AUDIT_LOGGING_TIMEOUT_SECONDS
from .errors import ConfigurationError, NotFoundError
from .models import DbAuditLogging, LogSettings, ResourceKind, YsqlConfig
from .state_reader import ReadMode, keep_caller_order
from .translator import build_audit_logging_spec

logger = logging.getLogger(__name__)

TASK_ENABLE = "ENABLE_DATABASE_AUDIT_LOGGING"
TASK_EDIT = "EDIT_DATABASE_AUDIT_LOGGING"
TASK_DISABLE = "DISABLE_DATABASE_AUDIT_LOGGING"


class DbAuditLoggingReconciler(ResourceReconciler[DbAuditLogging]):
    kind = ResourceKind.DB_AUDIT_LOGGING
    model = DbAuditLogging

    async def create(
        self, desired: DbAuditLogging, on_submitted: SubmitHook | None = None
    ) -> DbAuditLogging:
        scope = await self.scope()
        cluster_id = desired.cluster_id
        integration_id = await self._integration_id(scope, desired.integration_name)

        await self.call(
            self._api.associate_audit_exporter_config,
            scope.account_id,
            scope.project_id,
            cluster_id,
            build_audit_logging_spec(desired, integration_id),
        )
        self.submitted(on_submitted, desired)
        await self.wait_for_task(
            scope,
            cluster_id,
            TASK_ENABLE,
            "DB audit logging enablement",
            max_duration_seconds=AUDIT_LOGGING_TIMEOUT_SECONDS,
            timeout_message="The operation timed out waiting for while enabling DB Audit Logging",
            failure_message=f"Failed to enable DB Audit Logging on cluster {cluster_id}",
        )
        logger.info("DB audit logging enabled", extra={"cluster_id": cluster_id})
        state = await self.read(desired, desired)
        assert state is not None
        return state

    async def read(
        self, desired: DbAuditLogging | None, prior: DbAuditLogging, mode: ReadMode = ReadMode.REFRESH
    ) -> DbAuditLogging | None:
        scope = await self.scope()
        cluster_id = prior.cluster_id
        configs = await self.fetch(
            mode, self._api.list_audit_exporter_configs, scope.account_id, scope.project_id, cluster_id
        )
        if not configs:
            if mode == ReadMode.DELETE_PRECHECK:
                return None
            raise NotFoundError(
                f"Unable to find DB Audit Logging configuration for cluster with ID {cluster_id}"
            )

        config = configs[0]
        spec = config["spec"]
        info = config["info"]
        integration_id = spec["exporter_id"]
        providers = await self.call(
            self._api.list_telemetry_providers, scope.account_id, scope.project_id
        )
        integration = next((p for p in providers if p["info"]["id"] == integration_id), None)
        if integration is None:
            raise ConfigurationError(
                f"Failed to read DB Audit Logging configuration for cluster with ID {cluster_id}",
                title="Unable to fetch integration details",
            )

        ysql = spec.get("ysql_config") or {}
        settings = ysql.get("log_settings")
        ordering = desired or prior
        return DbAuditLogging(
            account_id=scope.account_id,
            project_id=scope.project_id,
            cluster_id=info.get("cluster_id", cluster_id),
            config_id=info["id"],
            state=info.get("state"),
            integration_id=integration_id,
            integration_name=integration["spec"]["name"],
            ysql_config=YsqlConfig(
                statement_classes=keep_caller_order(
                    ordering.ysql_config.statement_classes, ysql.get("statement_classes") or []
                ),
                log_settings=LogSettings(**settings) if settings else None,
            ),
        )

    async def update(self, desired: DbAuditLogging, prior: DbAuditLogging) -> DbAuditLogging:
        scope = await self.scope()
        cluster_id = desired.cluster_id
        config_id = self.require_id(prior, "config_id")
        integration_id = await self._integration_id(scope, desired.integration_name)

        await self.call(
            self._api.update_audit_exporter_config,
            scope.account_id,
            scope.project_id,
            cluster_id,
            config_id,
            build_audit_logging_spec(desired, integration_id),
        )
        await self.wait_for_task(
            scope,
            cluster_id,
            TASK_EDIT,
            "DB audit logging update",
            max_duration_seconds=AUDIT_LOGGING_TIMEOUT_SECONDS,
            timeout_message="The operation timed out waiting for DB Audit Log configuration update operation.",
            failure_message=f"Failed to update DB Audit Logging configuration on cluster {cluster_id}",
        )
        state = await self.read(desired, prior)
        assert state is not None
        return state

    async def delete(self, prior: DbAuditLogging) -> None:
        scope = await self.scope()
        cluster_id = prior.cluster_id
        config_id = self.require_id(prior, "config_id")
        await self.call(
            self._api.remove_audit_exporter_config,
            scope.account_id,
            scope.project_id,
            cluster_id,
            config_id,
        )
        await self.wait_for_task(
            scope,
            cluster_id,
            TASK_DISABLE,
            "DB audit logging removal",
            max_duration_seconds=AUDIT_LOGGING_TIMEOUT_SECONDS,
            timeout_message="The operation timed out waiting for DB Audit Log configuration removal to complete.",
            failure_message=f"Failed to remove DB Audit Logging configuration from cluster {cluster_id}",
        )
        logger.info("DB audit logging disabled", extra={"cluster_id": cluster_id})

    async def _integration_id(self, scope: Scope, name: str) -> str:
        providers = await self.call(
            self._api.list_telemetry_providers, scope.account_id, scope.project_id
        )
        for provider in providers:
            if provider["spec"]["name"] == name:
                return provider["info"]["id"]
        raise ConfigurationError(
            f"Integration {name} not found", title="Unable to fetch integration details"
        )
