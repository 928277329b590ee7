"""Telemetry integration reconciler.

The service masks credentials on read, so secrets in the settled state always
come from the caller's spec (see merge_integration_secrets).
"""

from __future__ import annotations

import logging
from typing import Any

from .base import ResourceReconciler, SubmitHook
from .errors import NotFoundError, UnsupportedOperationError
from .models import (
    DataDogSpec,
    GcpServiceAccount,
    GrafanaSpec,
    Integration,
    IntegrationType,
    PrometheusSpec,
    ResourceKind,
    SumoLogicSpec,
)
from .state_reader import ReadMode, merge_integration_secrets
from .translator import build_integration_spec

logger = logging.getLogger(__name__)

MASKED = ""


class IntegrationReconciler(ResourceReconciler[Integration]):
    kind = ResourceKind.INTEGRATION
    model = Integration

    async def create(
        self, desired: Integration, on_submitted: SubmitHook | None = None
    ) -> Integration:
        payload = build_integration_spec(desired, self._config.feature_flags)
        scope = await self.scope()
        response = await self.call(
            self._api.create_telemetry_provider, scope.account_id, scope.project_id, payload
        )
        config_id = response["info"]["id"]
        self.submitted(on_submitted, desired.model_copy(update={"config_id": config_id}))
        logger.info(
            "Integration created",
            extra={"config_name": desired.config_name, "config_id": config_id},
        )
        state = await self.read(desired, desired.model_copy(update={"config_id": config_id}))
        assert state is not None
        return state

    async def read(
        self, desired: Integration | None, prior: Integration, mode: ReadMode = ReadMode.REFRESH
    ) -> Integration | None:
        scope = await self.scope()
        providers = await self.call(
            self._api.list_telemetry_providers, scope.account_id, scope.project_id
        )
        raw = next(
            (
                p
                for p in providers
                if (prior.config_id and p["info"]["id"] == prior.config_id)
                or (not prior.config_id and p["spec"]["name"] == prior.config_name)
            ),
            None,
        )
        if raw is None:
            if mode == ReadMode.DELETE_PRECHECK:
                return None
            raise NotFoundError(
                f"could not find integration with id: {prior.config_id or prior.config_name}"
            )

        state = integration_from_api(raw, scope.account_id, scope.project_id)
        return merge_integration_secrets(state, desired or prior)

    async def update(self, desired: Integration, prior: Integration) -> Integration:
        raise UnsupportedOperationError(
            "This resource does not support updates. "
            "Please destroy and recreate the resource if changes are needed.",
            title="Unsupported Operation",
        )

    async def delete(self, prior: Integration) -> None:
        scope = await self.scope()
        config_id = self.require_id(prior, "config_id")
        await self.call(
            self._api.delete_telemetry_provider, scope.account_id, scope.project_id, config_id
        )
        logger.info("Integration deleted", extra={"config_id": config_id})


def integration_from_api(raw: dict[str, Any], account_id: str, project_id: str) -> Integration:
    """Build the state from a telemetry provider; secrets are left masked."""
    spec = raw["spec"]
    info = raw["info"]
    integration_type = IntegrationType(spec["type"])
    values: dict[str, Any] = {
        "account_id": account_id,
        "project_id": project_id,
        "config_id": info["id"],
        "config_name": spec["name"],
        "type": integration_type,
        "is_valid": info.get("is_valid"),
    }

    match integration_type:
        case IntegrationType.DATADOG:
            values["datadog_spec"] = DataDogSpec(api_key=MASKED, site=spec["datadog_spec"]["site"])
        case IntegrationType.PROMETHEUS:
            values["prometheus_spec"] = PrometheusSpec(endpoint=spec["prometheus_spec"]["endpoint"])
        case IntegrationType.GRAFANA:
            grafana = spec["grafana_spec"]
            values["grafana_spec"] = GrafanaSpec(
                access_policy_token=MASKED,
                zone=grafana["zone"],
                instance_id=grafana["instance_id"],
                org_slug=grafana["org_slug"],
            )
        case IntegrationType.SUMOLOGIC:
            values["sumologic_spec"] = SumoLogicSpec(
                access_key=MASKED, access_id=MASKED, installation_token=MASKED
            )
        case IntegrationType.GOOGLECLOUD:
            gcp = dict(spec["googlecloud_spec"])
            gcp["private_key"] = MASKED
            values["googlecloud_spec"] = GcpServiceAccount(
                **{k: v for k, v in gcp.items() if k in GcpServiceAccount.model_fields}
            )

    return Integration(**values)
