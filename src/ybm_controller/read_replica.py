"""Read replica reconciler.

The read replica set has no identity of its own: it is addressed through the
primary cluster, and every change is complete once the primary is ACTIVE again.
"""

from __future__ import annotations

import logging
from typing import Any

from .base import ResourceReconciler, Scope, SubmitHook
from .models import NodeConfig, ReadReplicaInfo, ReadReplicas, ResourceKind
from .state_reader import ReadMode, reorder_by_key
from .translator import build_read_replicas_spec, region_index_map, validate_read_replicas

logger = logging.getLogger(__name__)

PRIMARY_ACTIVE = "ACTIVE"


class ReadReplicasReconciler(ResourceReconciler[ReadReplicas]):
    kind = ResourceKind.READ_REPLICAS
    model = ReadReplicas

    async def create(
        self, desired: ReadReplicas, on_submitted: SubmitHook | None = None
    ) -> ReadReplicas:
        return await self._submit(desired, creating=True, on_submitted=on_submitted)

    async def update(self, desired: ReadReplicas, prior: ReadReplicas) -> ReadReplicas:
        return await self._submit(desired, creating=False)

    async def _submit(
        self, desired: ReadReplicas, *, creating: bool, on_submitted: SubmitHook | None = None
    ) -> ReadReplicas:
        validate_read_replicas(desired)
        scope = await self.scope()
        cluster_id = desired.primary_cluster_id
        translated = await self.call(build_read_replicas_spec, desired, self.resolver(scope))

        submit = self._api.create_read_replicas if creating else self._api.edit_read_replicas
        await self.call(submit, scope.account_id, scope.project_id, cluster_id, translated.payload)
        self.submitted(on_submitted, desired)

        verb = "creation" if creating else "update"
        logger.info(
            f"Read replica {verb} submitted",
            extra={"cluster_id": cluster_id, "regions": list(translated.region_index)},
        )
        await self._wait_for_primary(
            scope, cluster_id, f"read replica {verb}",
            f"The operation timed out waiting for read replica {verb}.",
        )

        state = await self.read(desired, desired)
        assert state is not None
        return state

    async def read(
        self, desired: ReadReplicas | None, prior: ReadReplicas, mode: ReadMode = ReadMode.REFRESH
    ) -> ReadReplicas | None:
        scope = await self.scope()
        cluster_id = prior.primary_cluster_id
        raw = await self.fetch(
            mode, self._api.get_read_replicas, scope.account_id, scope.project_id, cluster_id
        )
        if raw is None:
            return None

        endpoints = (raw.get("info") or {}).get("endpoints") or []
        replicas: list[ReadReplicaInfo] = []
        vpc_names: dict[str, str] = {}
        for position, spec in enumerate(raw.get("spec") or []):
            placement = spec["placement_info"]
            # region_node_info supersedes the older node_info
            node = spec.get("region_node_info") or spec.get("node_info") or {}
            vpc_id = placement.get("vpc_id") or None
            vpc_name = None
            if vpc_id:
                if vpc_id not in vpc_names:
                    vpc = await self.call(self._api.get_vpc, scope.account_id, scope.project_id, vpc_id)
                    vpc_names[vpc_id] = vpc["spec"]["name"]
                vpc_name = vpc_names[vpc_id]
            replicas.append(
                ReadReplicaInfo(
                    cloud_type=placement["cloud_info"]["code"],
                    region=placement["cloud_info"]["region"],
                    num_nodes=placement["num_nodes"],
                    num_replicas=placement["num_replicas"],
                    vpc_id=vpc_id,
                    vpc_name=vpc_name,
                    multi_zone=placement.get("multi_zone"),
                    node_config=NodeConfig(
                        num_cores=node.get("num_cores"),
                        disk_size_gb=node.get("disk_size_gb"),
                        disk_iops=node.get("disk_iops"),
                    ),
                    endpoint=_endpoint_host(endpoints, position),
                )
            )

        index = None
        if mode != ReadMode.LOOKUP:
            ordering = desired or prior
            index = region_index_map(r.region for r in ordering.read_replicas_info)

        return ReadReplicas(
            account_id=scope.account_id,
            project_id=scope.project_id,
            primary_cluster_id=cluster_id,
            read_replicas_info=reorder_by_key(replicas, lambda r: r.region, index),
        )

    async def delete(self, prior: ReadReplicas) -> None:
        scope = await self.scope()
        cluster_id = prior.primary_cluster_id
        await self.call(self._api.delete_read_replicas, scope.account_id, scope.project_id, cluster_id)
        await self._wait_for_primary(
            scope, cluster_id, "read replica deletion",
            "The operation timed out waiting for read replica deletion.",
        )
        logger.info("Read replicas deleted", extra={"cluster_id": cluster_id})

    async def _wait_for_primary(
        self, scope: Scope, cluster_id: str, description: str, timeout_message: str
    ) -> None:
        def fetch_state() -> str:
            raw = self._api.get_cluster(scope.account_id, scope.project_id, cluster_id)
            return str(raw["info"].get("state", "")).upper()

        await self.wait_for_state(
            cluster_id,
            description,
            fetch_state,
            success=(PRIMARY_ACTIVE,),
            timeout_message=timeout_message,
        )


def _endpoint_host(endpoints: list[dict[str, Any]], position: int) -> str | None:
    if position < len(endpoints):
        return endpoints[position].get("host")
    return None
