"""Fake YbmApiClient backed by MockYbmState.

Mirrors every public method of ybm_controller.api_client.YbmApiClient with
the same signature and the same response shapes ({"spec": ..., "info": ...}),
so reconcilers run unmodified against it.
"""

from __future__ import annotations

import copy
from typing import Any

from ybm_controller.errors import ApiError, NotFoundError

from .state import MockEntity, MockYbmState


class MockYbmApiClient:
    """In-memory stand-in for the REST client."""

    def __init__(self, state: MockYbmState, config: Any = None) -> None:
        self._state = state
        self.config = config
        self.closed = False

    def close(self) -> None:
        self.closed = True

    def _check_scope(self, account_id: str, project_id: str | None = None) -> None:
        if account_id != self._state.account_id:
            raise NotFoundError(f"Account {account_id} not found", status_code=404)
        if project_id is not None and project_id not in (
            self._state.project_id,
            *self._state.extra_projects,
        ):
            raise NotFoundError(f"Project {project_id} not found", status_code=404)

    # =========================================================================
    # Account, tracks, node configurations, tasks
    # =========================================================================

    def list_accounts(self) -> list[dict[str, Any]]:
        self._state.record("list_accounts")
        return copy.deepcopy(self._state.accounts)

    def list_tracks(self, account_id: str) -> list[dict[str, Any]]:
        self._state.record("list_tracks", account_id)
        self._check_scope(account_id)
        return copy.deepcopy(self._state.tracks)

    def list_node_options(
        self, account_id: str, project_id: str, cloud: str, tier: str, region: str
    ) -> list[dict[str, Any]]:
        self._state.record("list_node_options", cloud, tier, region)
        self._check_scope(account_id, project_id)
        return copy.deepcopy(self._state.node_options)

    def latest_task_state(
        self, account_id: str, project_id: str, entity_id: str, task_type: str
    ) -> str | None:
        self._state.record("latest_task_state", entity_id, task_type)
        self._check_scope(account_id, project_id)
        return self._state.task_state(entity_id, task_type)

    # =========================================================================
    # Clusters
    # =========================================================================

    def create_cluster(self, account_id: str, project_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        self._state.record("create_cluster", payload)
        self._check_scope(account_id, project_id)
        name = payload["cluster_spec"]["name"]
        if self._state.find_cluster(name) is not None:
            raise ApiError(f"Cluster {name} already exists", status_code=409)

        cluster_id = self._state.add_cluster(payload["cluster_spec"])
        cluster = self._state.clusters[cluster_id]
        cluster.begin("CREATING", "ACTIVE", self._state.settle_after)
        cmk = payload.get("security_cmk_spec")
        if cmk is not None:
            self._state.cluster_cmks[cluster_id] = _masked_cmk(cmk)
        self._state.start_task(cluster_id, "CREATE_CLUSTER")
        return {"spec": copy.deepcopy(cluster.spec), "info": copy.deepcopy(cluster.info)}

    def get_cluster(self, account_id: str, project_id: str, cluster_id: str) -> dict[str, Any]:
        self._state.record("get_cluster", cluster_id)
        self._check_scope(account_id, project_id)
        raw = self._state.cluster(cluster_id).observe()
        raw["spec"]["cluster_region_info"] = self._state.ordered(raw["spec"]["cluster_region_info"])
        return raw

    def edit_cluster(
        self, account_id: str, project_id: str, cluster_id: str, spec: dict[str, Any]
    ) -> dict[str, Any]:
        self._state.record("edit_cluster", cluster_id, spec)
        self._check_scope(account_id, project_id)
        cluster = self._state.cluster(cluster_id)
        current_version = cluster.spec["cluster_info"].get("version")
        if spec["cluster_info"].get("version") != current_version:
            raise ApiError("Cluster version mismatch", status_code=409)

        updated = copy.deepcopy(spec)
        if not updated.get("software_info"):
            updated["software_info"] = copy.deepcopy(cluster.spec.get("software_info") or {})
        updated["cluster_info"]["version"] = current_version + 1
        self._state.sync_node_info(updated)
        cluster.spec = updated
        cluster.begin("UPDATING", "ACTIVE", self._state.settle_after)
        self._state.start_task(cluster_id, "EDIT_CLUSTER")
        return {"spec": copy.deepcopy(cluster.spec), "info": copy.deepcopy(cluster.info)}

    def delete_cluster(self, account_id: str, project_id: str, cluster_id: str) -> None:
        self._state.record("delete_cluster", cluster_id)
        self._check_scope(account_id, project_id)
        self._state.cluster(cluster_id)
        del self._state.clusters[cluster_id]
        for allow_list_id in self._state.cluster_allow_lists.pop(cluster_id, []):
            _detach(self._state.allow_lists.get(allow_list_id), cluster_id)
        self._state.backup_schedules.pop(cluster_id, None)
        self._state.read_replicas.pop(cluster_id, None)
        self._state.audit_configs.pop(cluster_id, None)
        self._state.cluster_cmks.pop(cluster_id, None)
        self._state.start_task(cluster_id, "DELETE_CLUSTER")

    def pause_cluster(self, account_id: str, project_id: str, cluster_id: str) -> None:
        self._state.record("pause_cluster", cluster_id)
        self._check_scope(account_id, project_id)
        self._state.cluster(cluster_id).begin("PAUSING", "PAUSED", self._state.settle_after)

    def resume_cluster(self, account_id: str, project_id: str, cluster_id: str) -> None:
        self._state.record("resume_cluster", cluster_id)
        self._check_scope(account_id, project_id)
        self._state.cluster(cluster_id).begin("RESUMING", "ACTIVE", self._state.settle_after)

    def list_cluster_allow_lists(
        self, account_id: str, project_id: str, cluster_id: str
    ) -> list[dict[str, Any]]:
        self._state.record("list_cluster_allow_lists", cluster_id)
        self._check_scope(account_id, project_id)
        self._state.cluster(cluster_id)
        attached = self._state.cluster_allow_lists.get(cluster_id, [])
        return self._state.ordered(
            [self._state.allow_list(a).observe() for a in attached if a in self._state.allow_lists]
        )

    def set_cluster_allow_lists(
        self, account_id: str, project_id: str, cluster_id: str, allow_list_ids: list[str]
    ) -> None:
        self._state.record("set_cluster_allow_lists", cluster_id, list(allow_list_ids))
        self._check_scope(account_id, project_id)
        self._state.cluster(cluster_id)
        for allow_list_id in allow_list_ids:
            self._state.allow_list(allow_list_id)

        for previous in self._state.cluster_allow_lists.get(cluster_id, []):
            _detach(self._state.allow_lists.get(previous), cluster_id)
        self._state.cluster_allow_lists[cluster_id] = list(allow_list_ids)
        for allow_list_id in allow_list_ids:
            cluster_ids = self._state.allow_lists[allow_list_id].info["cluster_ids"]
            if cluster_id not in cluster_ids:
                cluster_ids.append(cluster_id)
        self._state.start_task(cluster_id, "EDIT_ALLOW_LIST")

    def get_cluster_cmk(self, account_id: str, project_id: str, cluster_id: str) -> dict[str, Any] | None:
        self._state.record("get_cluster_cmk", cluster_id)
        self._check_scope(account_id, project_id)
        cmk = self._state.cluster_cmks.get(cluster_id)
        return copy.deepcopy(cmk) if cmk is not None else None

    def edit_cluster_cmk(
        self, account_id: str, project_id: str, cluster_id: str, cmk: dict[str, Any]
    ) -> None:
        self._state.record("edit_cluster_cmk", cluster_id, cmk)
        self._check_scope(account_id, project_id)
        cluster = self._state.cluster(cluster_id)
        self._state.cluster_cmks[cluster_id] = _masked_cmk(cmk)
        cluster.begin("UPDATING", "ACTIVE", self._state.settle_after)

    def set_connection_pooling(
        self, account_id: str, project_id: str, cluster_id: str, operation: dict[str, Any]
    ) -> None:
        self._state.record("set_connection_pooling", cluster_id, operation)
        self._check_scope(account_id, project_id)
        cluster = self._state.cluster(cluster_id)
        cluster.info["is_connection_pooling_enabled"] = operation["operation"] == "ENABLE"
        cluster.begin("UPDATING", "ACTIVE", self._state.settle_after)

    def get_certificate(self) -> str:
        self._state.record("get_certificate")
        return self._state.certificate

    # =========================================================================
    # Backup schedules, backups, restores
    # =========================================================================

    def list_backup_schedules(
        self, account_id: str, project_id: str, cluster_id: str
    ) -> list[dict[str, Any]]:
        self._state.record("list_backup_schedules", cluster_id)
        self._check_scope(account_id, project_id)
        schedule = self._state.backup_schedules.get(cluster_id)
        return [schedule.observe()] if schedule is not None else []

    def edit_backup_schedule(
        self, account_id: str, project_id: str, schedule_id: str, schedule: dict[str, Any]
    ) -> None:
        self._state.record("edit_backup_schedule", schedule_id, schedule)
        self._check_scope(account_id, project_id)
        entity = next((s for s in self._state.backup_schedules.values() if s.id == schedule_id), None)
        if entity is None:
            raise NotFoundError(f"Backup schedule {schedule_id} not found", status_code=404)
        spec = dict(schedule)
        spec.setdefault("cron_expression", "")
        spec.setdefault("time_interval_in_days", 0)
        spec.setdefault("incremental_interval_in_minutes", 0)
        entity.spec = spec

    def create_backup(self, account_id: str, project_id: str, spec: dict[str, Any]) -> dict[str, Any]:
        self._state.record("create_backup", spec)
        self._check_scope(account_id, project_id)
        self._state.cluster(spec["cluster_id"])
        backup_id = self._state.new_id("backup")
        backup = MockEntity(
            spec={
                "cluster_id": spec["cluster_id"],
                "retention_period_in_days": spec["retention_period_in_days"],
                "description": spec.get("description"),
            },
            info={"id": backup_id},
        )
        backup.begin("IN_PROGRESS", "SUCCEEDED", self._state.settle_after)
        self._state.backups[backup_id] = backup
        return {"spec": copy.deepcopy(backup.spec), "info": copy.deepcopy(backup.info)}

    def get_backup(self, account_id: str, project_id: str, backup_id: str) -> dict[str, Any]:
        self._state.record("get_backup", backup_id)
        self._check_scope(account_id, project_id)
        return self._state.backup(backup_id).observe()

    def list_backups(self, account_id: str, project_id: str, cluster_id: str) -> list[dict[str, Any]]:
        self._state.record("list_backups", cluster_id)
        self._check_scope(account_id, project_id)
        return [b.observe() for b in self._state.backups.values() if b.spec["cluster_id"] == cluster_id]

    def delete_backup(self, account_id: str, project_id: str, backup_id: str) -> None:
        self._state.record("delete_backup", backup_id)
        self._check_scope(account_id, project_id)
        self._state.backup(backup_id)
        del self._state.backups[backup_id]

    def restore_backup(
        self, account_id: str, project_id: str, backup_id: str, cluster_id: str
    ) -> dict[str, Any]:
        self._state.record("restore_backup", backup_id, cluster_id)
        self._check_scope(account_id, project_id)
        self._state.backup(backup_id)
        self._state.cluster(cluster_id)
        restore_id = self._state.new_id("restore")
        restore = MockEntity(
            spec={"backup_id": backup_id, "cluster_id": cluster_id}, info={"id": restore_id}
        )
        restore.begin("IN_PROGRESS", "SUCCEEDED", self._state.settle_after)
        self._state.restores[restore_id] = restore
        return {"spec": copy.deepcopy(restore.spec), "info": copy.deepcopy(restore.info)}

    def get_restore(self, account_id: str, project_id: str, restore_id: str) -> dict[str, Any]:
        self._state.record("get_restore", restore_id)
        self._check_scope(account_id, project_id)
        restore = self._state.restores.get(restore_id)
        if restore is None:
            raise NotFoundError(f"Restore {restore_id} not found", status_code=404)
        return restore.observe()

    # =========================================================================
    # VPCs
    # =========================================================================

    def list_vpcs(self, account_id: str, project_id: str, name: str | None = None) -> list[dict[str, Any]]:
        self._state.record("list_vpcs", name)
        self._check_scope(account_id, project_id)
        return [
            v.observe() for v in self._state.vpcs.values() if name is None or v.spec["name"] == name
        ]

    def create_vpc(self, account_id: str, project_id: str, spec: dict[str, Any]) -> dict[str, Any]:
        self._state.record("create_vpc", spec)
        self._check_scope(account_id, project_id)
        vpc_id = self._state.new_id("vpc")
        vpc = MockEntity(
            spec=copy.deepcopy(spec["spec"]),
            info={"id": vpc_id, "external_vpc_id": f"ext-{vpc_id}"},
        )
        vpc.begin("CREATING", "ACTIVE", self._state.settle_after)
        self._state.vpcs[vpc_id] = vpc
        return {"spec": copy.deepcopy(vpc.spec), "info": copy.deepcopy(vpc.info)}

    def get_vpc(self, account_id: str, project_id: str, vpc_id: str) -> dict[str, Any]:
        self._state.record("get_vpc", vpc_id)
        self._check_scope(account_id, project_id)
        raw = self._state.vpc(vpc_id).observe()
        raw["spec"]["region_specs"] = self._state.ordered(raw["spec"].get("region_specs") or [])
        return raw

    def delete_vpc(self, account_id: str, project_id: str, vpc_id: str) -> None:
        self._state.record("delete_vpc", vpc_id)
        self._check_scope(account_id, project_id)
        self._state.vpc(vpc_id)
        del self._state.vpcs[vpc_id]

    # =========================================================================
    # Allow lists
    # =========================================================================

    def list_allow_lists(self, account_id: str, project_id: str) -> list[dict[str, Any]]:
        self._state.record("list_allow_lists")
        self._check_scope(account_id, project_id)
        return [a.observe() for a in self._state.allow_lists.values()]

    def create_allow_list(self, account_id: str, project_id: str, spec: dict[str, Any]) -> dict[str, Any]:
        self._state.record("create_allow_list", spec)
        self._check_scope(account_id, project_id)
        allow_list_id = self._state.new_id("allow-list")
        allow_list = MockEntity(
            spec=copy.deepcopy(spec), info={"id": allow_list_id, "cluster_ids": []}
        )
        self._state.allow_lists[allow_list_id] = allow_list
        return allow_list.observe()

    def get_allow_list(self, account_id: str, project_id: str, allow_list_id: str) -> dict[str, Any]:
        self._state.record("get_allow_list", allow_list_id)
        self._check_scope(account_id, project_id)
        raw = self._state.allow_list(allow_list_id).observe()
        raw["spec"]["allow_list"] = self._state.ordered(raw["spec"].get("allow_list") or [])
        return raw

    def delete_allow_list(self, account_id: str, project_id: str, allow_list_id: str) -> None:
        self._state.record("delete_allow_list", allow_list_id)
        self._check_scope(account_id, project_id)
        allow_list = self._state.allow_list(allow_list_id)
        # Clusters on their way out no longer hold the list
        attached = [
            cluster_id
            for cluster_id in allow_list.info["cluster_ids"]
            if cluster_id in self._state.clusters and self._state.cluster_state(cluster_id) != "DELETING"
        ]
        if attached:
            raise ApiError(
                f"Allow list {allow_list_id} is still assigned to clusters", status_code=409
            )
        del self._state.allow_lists[allow_list_id]

    # =========================================================================
    # Read replicas
    # =========================================================================

    def create_read_replicas(
        self, account_id: str, project_id: str, cluster_id: str, spec: dict[str, Any]
    ) -> None:
        self._state.record("create_read_replicas", cluster_id, spec)
        self._check_scope(account_id, project_id)
        self._store_read_replicas(cluster_id, spec)

    def get_read_replicas(self, account_id: str, project_id: str, cluster_id: str) -> dict[str, Any]:
        self._state.record("get_read_replicas", cluster_id)
        self._check_scope(account_id, project_id)
        self._state.cluster(cluster_id)
        replicas = self._state.read_replicas.get(cluster_id)
        if replicas is None:
            raise NotFoundError(f"No read replicas for cluster {cluster_id}", status_code=404)
        raw = replicas.observe()
        raw["spec"] = self._state.ordered(raw["spec"])
        raw["info"]["endpoints"] = self._state.ordered(raw["info"]["endpoints"])
        return raw

    def edit_read_replicas(
        self, account_id: str, project_id: str, cluster_id: str, spec: dict[str, Any]
    ) -> None:
        self._state.record("edit_read_replicas", cluster_id, spec)
        self._check_scope(account_id, project_id)
        if cluster_id not in self._state.read_replicas:
            raise NotFoundError(f"No read replicas for cluster {cluster_id}", status_code=404)
        self._store_read_replicas(cluster_id, spec)

    def delete_read_replicas(self, account_id: str, project_id: str, cluster_id: str) -> None:
        self._state.record("delete_read_replicas", cluster_id)
        self._check_scope(account_id, project_id)
        cluster = self._state.cluster(cluster_id)
        if self._state.read_replicas.pop(cluster_id, None) is None:
            raise NotFoundError(f"No read replicas for cluster {cluster_id}", status_code=404)
        cluster.begin("UPDATING", "ACTIVE", self._state.settle_after)

    def _store_read_replicas(self, cluster_id: str, spec: dict[str, Any]) -> None:
        cluster = self._state.cluster(cluster_id)
        replicas = copy.deepcopy(spec["read_replicas"])
        endpoints = [
            {"host": f"{r['placement_info']['cloud_info']['region']}.rr.{cluster_id}.mock"}
            for r in replicas
        ]
        self._state.read_replicas[cluster_id] = MockEntity(
            spec=replicas, info={"id": f"rr-{cluster_id}", "endpoints": endpoints}
        )
        cluster.begin("UPDATING", "ACTIVE", self._state.settle_after)

    # =========================================================================
    # Telemetry providers (integrations)
    # =========================================================================

    def list_telemetry_providers(self, account_id: str, project_id: str) -> list[dict[str, Any]]:
        self._state.record("list_telemetry_providers")
        self._check_scope(account_id, project_id)
        return [p.observe() for p in self._state.telemetry_providers.values()]

    def create_telemetry_provider(
        self, account_id: str, project_id: str, spec: dict[str, Any]
    ) -> dict[str, Any]:
        self._state.record("create_telemetry_provider", spec)
        self._check_scope(account_id, project_id)
        if any(p.spec["name"] == spec["name"] for p in self._state.telemetry_providers.values()):
            raise ApiError(f"Integration {spec['name']} already exists", status_code=409)
        config_id = self._state.new_id("integration")
        provider = MockEntity(spec=copy.deepcopy(spec), info={"id": config_id, "is_valid": True})
        self._state.telemetry_providers[config_id] = provider
        return provider.observe()

    def delete_telemetry_provider(self, account_id: str, project_id: str, config_id: str) -> None:
        self._state.record("delete_telemetry_provider", config_id)
        self._check_scope(account_id, project_id)
        if self._state.telemetry_providers.pop(config_id, None) is None:
            raise NotFoundError(f"Integration {config_id} not found", status_code=404)

    # =========================================================================
    # DB audit log exporter configs
    # =========================================================================

    def list_audit_exporter_configs(
        self, account_id: str, project_id: str, cluster_id: str
    ) -> list[dict[str, Any]]:
        self._state.record("list_audit_exporter_configs", cluster_id)
        self._check_scope(account_id, project_id)
        self._state.cluster(cluster_id)
        return [c.observe() for c in self._state.audit_configs.get(cluster_id, [])]

    def associate_audit_exporter_config(
        self, account_id: str, project_id: str, cluster_id: str, spec: dict[str, Any]
    ) -> dict[str, Any]:
        self._state.record("associate_audit_exporter_config", cluster_id, spec)
        self._check_scope(account_id, project_id)
        self._state.cluster(cluster_id)
        if self._state.audit_configs.get(cluster_id):
            raise ApiError(f"DB audit logging already enabled on {cluster_id}", status_code=409)
        config = MockEntity(
            spec=copy.deepcopy(spec),
            info={"id": self._state.new_id("audit"), "state": "ACTIVE", "cluster_id": cluster_id},
        )
        self._state.audit_configs[cluster_id] = [config]
        self._state.start_task(cluster_id, "ENABLE_DATABASE_AUDIT_LOGGING")
        return config.observe()

    def update_audit_exporter_config(
        self, account_id: str, project_id: str, cluster_id: str, config_id: str, spec: dict[str, Any]
    ) -> dict[str, Any]:
        self._state.record("update_audit_exporter_config", cluster_id, config_id, spec)
        self._check_scope(account_id, project_id)
        config = self._audit_config(cluster_id, config_id)
        config.spec = copy.deepcopy(spec)
        self._state.start_task(cluster_id, "EDIT_DATABASE_AUDIT_LOGGING")
        return config.observe()

    def remove_audit_exporter_config(
        self, account_id: str, project_id: str, cluster_id: str, config_id: str
    ) -> None:
        self._state.record("remove_audit_exporter_config", cluster_id, config_id)
        self._check_scope(account_id, project_id)
        config = self._audit_config(cluster_id, config_id)
        self._state.audit_configs[cluster_id].remove(config)
        self._state.start_task(cluster_id, "DISABLE_DATABASE_AUDIT_LOGGING")

    def _audit_config(self, cluster_id: str, config_id: str) -> MockEntity:
        self._state.cluster(cluster_id)
        for config in self._state.audit_configs.get(cluster_id, []):
            if config.id == config_id:
                return config
        raise NotFoundError(f"DB audit logging config {config_id} not found", status_code=404)


def _masked_cmk(cmk: dict[str, Any]) -> dict[str, Any]:
    # The service echoes only the provider and the enablement flag
    return {"spec": {"provider_type": cmk["provider_type"], "is_enabled": cmk["is_enabled"]}}


def _detach(allow_list: MockEntity | None, cluster_id: str) -> None:
    if allow_list is not None and cluster_id in allow_list.info["cluster_ids"]:
        allow_list.info["cluster_ids"].remove(cluster_id)
