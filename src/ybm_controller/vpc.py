"""VPC reconciler. VPCs are immutable once created."""

from __future__ import annotations

import logging

from .base import ResourceReconciler, SubmitHook
from .config import VPC_CREATE_TIMEOUT_SECONDS, VPC_DELETE_TIMEOUT_SECONDS
from .errors import UnsupportedOperationError
from .models import ResourceKind, Vpc, VpcRegionInfo
from .state_reader import ReadMode, reorder_by_key
from .translator import build_vpc_spec, region_index_map, validate_vpc

logger = logging.getLogger(__name__)

VPC_ACTIVE = "ACTIVE"


class VpcReconciler(ResourceReconciler[Vpc]):
    kind = ResourceKind.VPC
    model = Vpc

    async def create(self, desired: Vpc, on_submitted: SubmitHook | None = None) -> Vpc:
        validate_vpc(desired)
        scope = await self.scope()
        response = await self.call(
            self._api.create_vpc, scope.account_id, scope.project_id, build_vpc_spec(desired)
        )
        vpc_id = response["info"]["id"]
        self.submitted(on_submitted, desired.model_copy(update={"vpc_id": vpc_id}))
        logger.info("VPC creation submitted", extra={"vpc_name": desired.name, "vpc_id": vpc_id})

        def fetch_state() -> str:
            return self._api.get_vpc(scope.account_id, scope.project_id, vpc_id)["info"].get("state", "")

        await self.wait_for_state(
            vpc_id,
            "VPC creation",
            fetch_state,
            success=(VPC_ACTIVE,),
            max_duration_seconds=VPC_CREATE_TIMEOUT_SECONDS,
            timeout_message="The operation timed out waiting for VPC creation.",
        )
        state = await self.read(desired, desired.model_copy(update={"vpc_id": vpc_id}))
        assert state is not None
        return state

    async def read(self, desired: Vpc | None, prior: Vpc, mode: ReadMode = ReadMode.REFRESH) -> Vpc | None:
        scope = await self.scope()
        vpc_id = self.require_id(prior, "vpc_id")
        raw = await self.fetch(mode, self._api.get_vpc, scope.account_id, scope.project_id, vpc_id)
        if raw is None:
            return None
        spec = raw["spec"]
        values = {
            "account_id": scope.account_id,
            "project_id": scope.project_id,
            "vpc_id": vpc_id,
            "name": spec["name"],
            "cloud": spec["cloud"],
            "external_vpc_id": raw["info"].get("external_vpc_id"),
        }
        # A global CIDR and per-region CIDRs are mutually exclusive
        if spec.get("parent_cidr"):
            values["global_cidr"] = spec["parent_cidr"]
        else:
            values["global_cidr"] = None
            ordering = desired or prior
            index = None
            if mode != ReadMode.LOOKUP and ordering.region_cidr_info:
                index = region_index_map(r.region for r in ordering.region_cidr_info)
            region_specs = sorted(spec.get("region_specs") or [], key=lambda r: r["region"])
            values["region_cidr_info"] = [
                VpcRegionInfo(region=r["region"], cidr=r.get("cidr"))
                for r in reorder_by_key(region_specs, lambda r: r["region"], index)
            ]
        return Vpc(**values)

    async def update(self, desired: Vpc, prior: Vpc) -> Vpc:
        raise UnsupportedOperationError(
            "Updating VPCs is not currently supported. Delete and recreate the provider.",
            title="Unable to update VPC.",
        )

    async def delete(self, prior: Vpc) -> None:
        scope = await self.scope()
        vpc_id = self.require_id(prior, "vpc_id")
        await self.call(self._api.delete_vpc, scope.account_id, scope.project_id, vpc_id)
        await self.wait_until_gone(
            vpc_id,
            "VPC deletion",
            lambda: self._api.get_vpc(scope.account_id, scope.project_id, vpc_id),
            max_duration_seconds=VPC_DELETE_TIMEOUT_SECONDS,
            timeout_message="The operation timed out waiting for the VPC to be deleted.",
        )
        logger.info("VPC deleted", extra={"vpc_id": vpc_id})
