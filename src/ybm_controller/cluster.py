"""Cluster reconciler.

CREATE:
1. Validate (credentials, VPC references, disk, IOPS, CMK, backup schedule)
2. Translate and submit, poll CREATE_CLUSTER, then wait for ACTIVE
3. Backup schedule, allow lists, restore, pause, connection pooling
4. Settlement read with write-only values merged back

UPDATE follows the same shape around an edit of the cluster spec. The edit
may or may not spawn an EDIT_CLUSTER task, which EditTaskCheck accounts for.
"""

from __future__ import annotations

import logging
from typing import Any

from .base import ResourceReconciler, Scope, SubmitHook
from .config import (
    CMK_EDIT_TIMEOUT_SECONDS,
    CONNECTION_POOLING_TIMEOUT_SECONDS,
    PAUSE_RESUME_TIMEOUT_SECONDS,
    RESTORE_TIMEOUT_SECONDS,
)
from .errors import ConfigurationError
from .models import (
    BackupSchedule,
    Cluster,
    ClusterEndpoint,
    ClusterInfo,
    ConnectionPoolingState,
    DesiredState,
    NodeConfig,
    RegionInfo,
    ResourceKind,
)
from .state_reader import (
    ReadMode,
    filter_preserving_input_order,
    merge_cluster_write_only,
    reorder_by_key,
    same_members,
)
from .translator import (
    ACCESSIBILITY_PUBLIC,
    STABLE_TRACK_ALIAS,
    build_backup_schedule,
    build_cluster_spec,
    build_cmk_spec,
    build_connection_pooling_operation,
    build_create_cluster_request,
    region_index_map,
    validate_cluster,
)

logger = logging.getLogger(__name__)

STATE_ACTIVE = "ACTIVE"
STATE_PAUSED = "PAUSED"
STATE_CREATE_FAILED = "CREATE_FAILED"

TASK_CREATE_CLUSTER = "CREATE_CLUSTER"
TASK_EDIT_CLUSTER = "EDIT_CLUSTER"
TASK_DELETE_CLUSTER = "DELETE_CLUSTER"

RESTORE_SUCCEEDED = "SUCCEEDED"
RESTORE_FAILED = "FAILED"


class ClusterReconciler(ResourceReconciler[Cluster]):
    kind = ResourceKind.CLUSTER
    model = Cluster

    # =========================================================================
    # Create
    # =========================================================================

    async def create(self, desired: Cluster, on_submitted: SubmitHook | None = None) -> Cluster:
        flags = self._config.feature_flags
        cloud = validate_cluster(desired, creating=True, flags=flags)
        scope = await self.scope()

        translated = await self.call(
            build_create_cluster_request, desired, self.resolver(scope), cloud=cloud
        )
        response = await self.call(
            self._api.create_cluster, scope.account_id, scope.project_id, translated.payload
        )
        cluster_id = response["info"]["id"]
        self.submitted(on_submitted, desired.model_copy(update={"cluster_id": cluster_id}))
        logger.info(
            "Cluster creation submitted",
            extra={"cluster_name": desired.cluster_name, "cluster_id": cluster_id},
        )

        await self.wait_for_task(
            scope,
            cluster_id,
            TASK_CREATE_CLUSTER,
            "cluster creation",
            failure_message="cluster creation operation failed",
        )
        await self._wait_for_cluster_state(
            scope, cluster_id, STATE_ACTIVE, "cluster creation", failure=(STATE_CREATE_FAILED,)
        )

        await self._apply_backup_schedule(scope, cluster_id, desired)
        await self._apply_allow_lists(scope, cluster_id, desired)
        if desired.restore_backup_id:
            await self._restore(scope, cluster_id, desired.restore_backup_id)
        if desired.desired_state == DesiredState.PAUSED:
            await self._pause(scope, cluster_id)
        if (
            flags.connection_pooling
            and desired.desired_connection_pooling_state == ConnectionPoolingState.ENABLED
        ):
            await self._set_connection_pooling(scope, cluster_id, ConnectionPoolingState.ENABLED)

        return await self._settle(scope, cluster_id, desired)

    # =========================================================================
    # Read
    # =========================================================================

    async def read(
        self, desired: Cluster | None, prior: Cluster, mode: ReadMode = ReadMode.REFRESH
    ) -> Cluster | None:
        scope = await self.scope()
        cluster_id = self.require_id(prior, "cluster_id")
        raw = await self.fetch(
            mode, self._api.get_cluster, scope.account_id, scope.project_id, cluster_id
        )
        if raw is None:
            return None
        ordering = desired if desired is not None else (None if mode == ReadMode.LOOKUP else prior)
        state = await self._to_state(scope, raw, ordering)
        observed_cmk = await self.call(
            self._api.get_cluster_cmk, scope.account_id, scope.project_id, cluster_id
        )
        return merge_cluster_write_only(state, desired or prior, observed_cmk)

    async def _settle(self, scope: Scope, cluster_id: str, desired: Cluster) -> Cluster:
        raw = await self.call(self._api.get_cluster, scope.account_id, scope.project_id, cluster_id)
        state = await self._to_state(scope, raw, desired)
        observed_cmk = await self.call(
            self._api.get_cluster_cmk, scope.account_id, scope.project_id, cluster_id
        )
        return merge_cluster_write_only(state, desired, observed_cmk)

    async def _to_state(self, scope: Scope, raw: dict[str, Any], ordering: Cluster | None) -> Cluster:
        """Build the canonical state from a fetched cluster.

        ordering supplies the caller's region and allow list order; None keeps
        the server order.
        """
        spec = raw["spec"]
        info = raw["info"]
        cluster_id = info["id"]
        cluster_info = spec["cluster_info"]

        index = None
        if ordering is not None:
            index = region_index_map(r.region for r in ordering.cluster_region_info)
        fetched_regions = reorder_by_key(
            spec.get("cluster_region_info", []),
            lambda r: r["placement_info"]["cloud_info"]["region"],
            index,
        )

        vpc_names: dict[str, str] = {}
        regions: list[RegionInfo] = []
        for region in fetched_regions:
            placement = region["placement_info"]
            node = region.get("node_info") or {}
            vpc_id = placement.get("vpc_id") or None
            vpc_name = None
            if vpc_id:
                if vpc_id not in vpc_names:
                    vpc = await self.call(self._api.get_vpc, scope.account_id, scope.project_id, vpc_id)
                    vpc_names[vpc_id] = vpc["spec"]["name"]
                vpc_name = vpc_names[vpc_id]
            regions.append(
                RegionInfo(
                    region=placement["cloud_info"]["region"],
                    num_nodes=placement["num_nodes"],
                    num_cores=node.get("num_cores"),
                    disk_size_gb=node.get("disk_size_gb"),
                    disk_iops=node.get("disk_iops"),
                    vpc_id=vpc_id,
                    vpc_name=vpc_name,
                    public_access=ACCESSIBILITY_PUBLIC in region.get("accessibility_types", []),
                    is_preferred=bool(region.get("is_affinitized")),
                    is_default=bool(region.get("is_default")),
                )
            )

        track_id = (spec.get("software_info") or {}).get("track_id")
        database_track = None
        if track_id:
            tracks = await self.call(self._api.list_tracks, scope.account_id)
            database_track = next(
                (t["spec"]["name"] for t in tracks if t["info"]["id"] == track_id), None
            )
            # "Stable" is accepted as an alias of the production track
            if (
                database_track == STABLE_TRACK_ALIAS
                and ordering is not None
                and ordering.database_track == "Stable"
            ):
                database_track = "Stable"

        node_info = cluster_info.get("node_info")
        node_config = None
        if node_info:
            node_config = NodeConfig(
                num_cores=node_info.get("num_cores"),
                disk_size_gb=node_info.get("disk_size_gb"),
                disk_iops=node_info.get("disk_iops"),
            )

        metadata = info.get("metadata") or {}
        state_value = info.get("state", "")

        values: dict[str, Any] = {
            "account_id": scope.account_id,
            "project_id": scope.project_id,
            "cluster_id": cluster_id,
            "cluster_name": spec["name"],
            "cloud_type": fetched_regions[0]["placement_info"]["cloud_info"]["code"]
            if fetched_regions
            else None,
            "cluster_type": cluster_info["cluster_type"],
            "cluster_tier": cluster_info["cluster_tier"],
            "fault_tolerance": cluster_info.get("fault_tolerance"),
            "num_faults_to_tolerate": cluster_info.get("num_faults_to_tolerate"),
            "cluster_region_info": regions,
            "database_track": database_track,
            "desired_state": DesiredState.PAUSED
            if state_value.upper() == STATE_PAUSED
            else DesiredState.ACTIVE,
            "node_config": node_config,
            "credentials": {},
            "cluster_info": ClusterInfo(
                state=state_value,
                software_version=info.get("software_version"),
                created_time=metadata.get("created_on"),
                updated_time=metadata.get("updated_on"),
            ),
            "cluster_version": str(cluster_info.get("version", "")),
            "cluster_endpoints": dict(info.get("endpoints") or {}),
            "endpoints": [
                ClusterEndpoint(
                    accessibility_type=e["accessibility_type"], host=e["host"], region=e["region"]
                )
                for e in info.get("cluster_endpoints") or []
            ],
            "cluster_certificate": await self.call(self._api.get_certificate),
        }

        if self._config.feature_flags.connection_pooling:
            values["desired_connection_pooling_state"] = (
                ConnectionPoolingState.ENABLED
                if info.get("is_connection_pooling_enabled")
                else ConnectionPoolingState.DISABLED
            )

        if ordering is None or ordering.backup_schedules is not None:
            values["backup_schedules"] = await self._read_backup_schedules(scope, cluster_id)

        if ordering is None or ordering.cluster_allow_list_ids is not None:
            observed_ids = await self._read_allow_list_ids(scope, cluster_id)
            if ordering is not None and ordering.cluster_allow_list_ids is not None:
                observed_ids = filter_preserving_input_order(
                    ordering.cluster_allow_list_ids, observed_ids
                )
            values["cluster_allow_list_ids"] = observed_ids

        return Cluster(**values)

    async def _read_backup_schedules(self, scope: Scope, cluster_id: str) -> list[BackupSchedule]:
        schedules = await self.call(
            self._api.list_backup_schedules, scope.account_id, scope.project_id, cluster_id
        )
        if not schedules:
            return []
        schedule = schedules[0]
        spec = schedule["spec"]
        return [
            BackupSchedule(
                schedule_id=schedule["info"]["id"],
                state=spec.get("state"),
                retention_period_in_days=spec.get("retention_period_in_days"),
                backup_description=spec.get("description"),
                cron_expression=spec.get("cron_expression") or None,
                time_interval_in_days=spec.get("time_interval_in_days") or None,
                # Zero means no incremental backups
                incremental_interval_in_mins=spec.get("incremental_interval_in_minutes") or None,
            )
        ]

    async def _read_allow_list_ids(self, scope: Scope, cluster_id: str) -> list[str]:
        allow_lists = await self.call(
            self._api.list_cluster_allow_lists, scope.account_id, scope.project_id, cluster_id
        )
        return [a["info"]["id"] for a in allow_lists]

    # =========================================================================
    # Update
    # =========================================================================

    async def update(self, desired: Cluster, prior: Cluster) -> Cluster:
        flags = self._config.feature_flags
        cloud = validate_cluster(desired, creating=False, flags=flags, cloud=prior.cloud_type)
        scope = await self.scope()
        cluster_id = self.require_id(prior, "cluster_id")

        raw = await self.call(self._api.get_cluster, scope.account_id, scope.project_id, cluster_id)
        current_state = raw["info"].get("state", "").upper()

        if current_state == STATE_PAUSED and desired.desired_state != DesiredState.PAUSED:
            await self._resume(scope, cluster_id)

        if (
            flags.connection_pooling
            and desired.desired_connection_pooling_state == ConnectionPoolingState.DISABLED
            and prior.desired_connection_pooling_state != ConnectionPoolingState.DISABLED
        ):
            await self._set_connection_pooling(scope, cluster_id, ConnectionPoolingState.DISABLED)

        if self._spec_changed(desired, prior):
            version = raw["spec"]["cluster_info"].get("version")
            translated = await self.call(
                build_cluster_spec,
                desired,
                self.resolver(scope),
                cloud=cloud,
                existing=raw,
                version=version,
            )
            await self.call(
                self._api.edit_cluster,
                scope.account_id,
                scope.project_id,
                cluster_id,
                translated.payload,
            )
            await self.wait_for_task(
                scope,
                cluster_id,
                TASK_EDIT_CLUSTER,
                "cluster edit",
                edit=True,
                failure_message="cluster edit operation failed",
            )
            await self._wait_for_cluster_state(scope, cluster_id, STATE_ACTIVE, "cluster edit")

        await self._apply_backup_schedule(scope, cluster_id, desired)

        if desired.cmk_spec is not None and desired.cmk_spec != prior.cmk_spec:
            await self.call(
                self._api.edit_cluster_cmk,
                scope.account_id,
                scope.project_id,
                cluster_id,
                build_cmk_spec(desired.cmk_spec),
            )
            await self._wait_for_cluster_state(
                scope,
                cluster_id,
                STATE_ACTIVE,
                "cluster CMK edit",
                max_duration_seconds=CMK_EDIT_TIMEOUT_SECONDS,
                timeout_message="unable to edit cluster CMK. The operation timed out waiting to edit CMK",
            )

        await self._apply_allow_lists(scope, cluster_id, desired)

        if desired.restore_backup_id and desired.restore_backup_id != prior.restore_backup_id:
            await self._restore(scope, cluster_id, desired.restore_backup_id)

        if desired.desired_state == DesiredState.PAUSED and current_state != STATE_PAUSED:
            await self._pause(scope, cluster_id)

        if (
            flags.connection_pooling
            and desired.desired_connection_pooling_state == ConnectionPoolingState.ENABLED
            and prior.desired_connection_pooling_state != ConnectionPoolingState.ENABLED
        ):
            await self._set_connection_pooling(scope, cluster_id, ConnectionPoolingState.ENABLED)

        return await self._settle(scope, cluster_id, desired)

    @staticmethod
    def _spec_changed(desired: Cluster, prior: Cluster) -> bool:
        """Whether any field carried by the cluster spec itself differs."""
        spec_fields = (
            "cluster_name",
            "cluster_type",
            "cluster_tier",
            "fault_tolerance",
            "num_faults_to_tolerate",
            "database_track",
            "node_config",
            "cluster_region_info",
        )
        for name in spec_fields:
            if name not in desired.model_fields_set:
                continue
            if name == "cluster_region_info":
                desired_regions = [r.model_dump(exclude_unset=True) for r in desired.cluster_region_info]
                prior_by_region = {r.region: r.model_dump() for r in prior.cluster_region_info}
                if not same_members(
                    [r.region for r in desired.cluster_region_info],
                    list(prior_by_region),
                ):
                    return True
                for region in desired_regions:
                    observed = prior_by_region[region["region"]]
                    if any(observed.get(k) != v for k, v in region.items() if v is not None):
                        return True
                continue
            if name == "node_config" and desired.node_config is not None:
                observed_node = prior.node_config.model_dump() if prior.node_config else {}
                wanted = desired.node_config.model_dump(exclude_unset=True)
                if any(observed_node.get(k) != v for k, v in wanted.items() if v is not None):
                    return True
                continue
            if getattr(desired, name) != getattr(prior, name):
                return True
        return False

    # =========================================================================
    # Delete
    # =========================================================================

    async def delete(self, prior: Cluster) -> None:
        scope = await self.scope()
        cluster_id = self.require_id(prior, "cluster_id")
        await self.call(self._api.delete_cluster, scope.account_id, scope.project_id, cluster_id)
        await self.wait_for_task(
            scope,
            cluster_id,
            TASK_DELETE_CLUSTER,
            "cluster deletion",
            failure_message="cluster deletion operation failed",
        )
        logger.info("Cluster deleted", extra={"cluster_id": cluster_id})

    # =========================================================================
    # Sub-operations
    # =========================================================================

    async def _wait_for_cluster_state(
        self,
        scope: Scope,
        cluster_id: str,
        target: str,
        description: str,
        *,
        failure: tuple[str, ...] = (),
        max_duration_seconds: float | None = None,
        timeout_message: str | None = None,
    ) -> None:
        def fetch_state() -> str:
            raw = self._api.get_cluster(scope.account_id, scope.project_id, cluster_id)
            return str(raw["info"].get("state", "")).upper()

        await self.wait_for_state(
            cluster_id,
            description,
            fetch_state,
            success=(target,),
            failure=failure,
            max_duration_seconds=max_duration_seconds,
            timeout_message=timeout_message,
            failure_message=f"{description} operation failed",
        )

    async def _apply_backup_schedule(self, scope: Scope, cluster_id: str, desired: Cluster) -> None:
        if not desired.backup_schedules:
            return
        schedules = await self.call(
            self._api.list_backup_schedules, scope.account_id, scope.project_id, cluster_id
        )
        if not schedules:
            raise ConfigurationError(
                "No backup schedule exists for the cluster",
                title="Unable to fetch the backup schedule for the cluster",
            )
        current = schedules[0]
        payload = build_backup_schedule(
            desired.backup_schedules[0], current["spec"].get("description", "")
        )
        if payload is None:
            return
        await self.call(
            self._api.edit_backup_schedule,
            scope.account_id,
            scope.project_id,
            current["info"]["id"],
            payload,
        )

    async def _apply_allow_lists(self, scope: Scope, cluster_id: str, desired: Cluster) -> None:
        if desired.cluster_allow_list_ids is None:
            return
        wanted = list(desired.cluster_allow_list_ids)
        current = await self._read_allow_list_ids(scope, cluster_id)
        if same_members(current, wanted):
            return

        await self.call(
            self._api.set_cluster_allow_lists, scope.account_id, scope.project_id, cluster_id, wanted
        )

        # The association is applied asynchronously
        def fetch_state() -> str:
            allow_lists = self._api.list_cluster_allow_lists(
                scope.account_id, scope.project_id, cluster_id
            )
            ids = [a["info"]["id"] for a in allow_lists]
            return "APPLIED" if same_members(ids, wanted) else "PENDING"

        await self.wait_for_state(
            cluster_id, "allow list association", fetch_state, success=("APPLIED",)
        )

    async def _restore(self, scope: Scope, cluster_id: str, backup_id: str) -> None:
        response = await self.call(
            self._api.restore_backup, scope.account_id, scope.project_id, backup_id, cluster_id
        )
        restore_id = response["info"]["id"]
        logger.info(
            "Restoring backup",
            extra={"cluster_id": cluster_id, "backup_id": backup_id, "restore_id": restore_id},
        )

        def fetch_state() -> str:
            return self._api.get_restore(scope.account_id, scope.project_id, restore_id)["info"]["state"]

        await self.wait_for_state(
            restore_id,
            "backup restore",
            fetch_state,
            success=(RESTORE_SUCCEEDED,),
            failure=(RESTORE_FAILED,),
            max_duration_seconds=RESTORE_TIMEOUT_SECONDS,
            timeout_message="unable to restore backup to the cluster: "
            "The operation timed out waiting for backup restore",
        )

    async def _pause(self, scope: Scope, cluster_id: str) -> None:
        await self.call(self._api.pause_cluster, scope.account_id, scope.project_id, cluster_id)
        await self._wait_for_cluster_state(
            scope,
            cluster_id,
            STATE_PAUSED,
            "cluster pause",
            max_duration_seconds=PAUSE_RESUME_TIMEOUT_SECONDS,
            timeout_message="unable to pause cluster. The operation timed out waiting to pause the cluster",
        )

    async def _resume(self, scope: Scope, cluster_id: str) -> None:
        await self.call(self._api.resume_cluster, scope.account_id, scope.project_id, cluster_id)
        await self._wait_for_cluster_state(
            scope,
            cluster_id,
            STATE_ACTIVE,
            "cluster resume",
            max_duration_seconds=PAUSE_RESUME_TIMEOUT_SECONDS,
            timeout_message="unable to resume cluster. The operation timed out waiting to resume the cluster",
        )

    async def _set_connection_pooling(
        self, scope: Scope, cluster_id: str, target: ConnectionPoolingState
    ) -> None:
        verb = "enable" if target == ConnectionPoolingState.ENABLED else "disable"
        await self.call(
            self._api.set_connection_pooling,
            scope.account_id,
            scope.project_id,
            cluster_id,
            build_connection_pooling_operation(target),
        )
        await self._wait_for_cluster_state(
            scope,
            cluster_id,
            STATE_ACTIVE,
            f"connection pooling {verb}",
            max_duration_seconds=CONNECTION_POOLING_TIMEOUT_SECONDS,
            timeout_message=f"unable to {verb} connection pooling. "
            f"The operation timed out waiting to {verb} connection pooling",
        )

