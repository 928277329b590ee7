"""Network allow list reconciler.

Allow lists are immutable. Deleting one first detaches it from every cluster
that still references it; a cluster already gone or being deleted is skipped.
"""

from __future__ import annotations

import logging

from .base import ResourceReconciler, Scope, SubmitHook
from .config import ALLOW_LIST_DETACH_TIMEOUT_SECONDS
from .errors import ConfigurationError, NotFoundError, UnsupportedOperationError
from .models import AllowList, ResourceKind
from .state_reader import ReadMode, keep_caller_order
from .translator import build_allow_list_spec

logger = logging.getLogger(__name__)

CLUSTER_DELETING = "DELETING"
TASK_EDIT_ALLOW_LIST = "EDIT_ALLOW_LIST"


class AllowListReconciler(ResourceReconciler[AllowList]):
    kind = ResourceKind.ALLOW_LIST
    model = AllowList

    async def create(self, desired: AllowList, on_submitted: SubmitHook | None = None) -> AllowList:
        scope = await self.scope()
        existing = await self.call(self._api.list_allow_lists, scope.account_id, scope.project_id)
        if any(a["spec"]["name"] == desired.allow_list_name for a in existing):
            raise ConfigurationError(
                f"NetworkAllowList {desired.allow_list_name} already exists",
                title="Unable to create allow list",
            )

        response = await self.call(
            self._api.create_allow_list,
            scope.account_id,
            scope.project_id,
            build_allow_list_spec(desired),
        )
        allow_list_id = response["info"]["id"]
        self.submitted(on_submitted, desired.model_copy(update={"allow_list_id": allow_list_id}))
        logger.info(
            "Allow list created",
            extra={"allow_list_name": desired.allow_list_name, "allow_list_id": allow_list_id},
        )
        state = await self.read(desired, desired.model_copy(update={"allow_list_id": allow_list_id}))
        assert state is not None
        return state

    async def read(
        self, desired: AllowList | None, prior: AllowList, mode: ReadMode = ReadMode.REFRESH
    ) -> AllowList | None:
        scope = await self.scope()
        allow_list_id = prior.allow_list_id
        if allow_list_id is None:
            allow_list_id = await self._find_id(scope, prior.allow_list_name)
            if allow_list_id is None:
                if mode == ReadMode.DELETE_PRECHECK:
                    return None
                raise NotFoundError(f"NetworkAllowList {prior.allow_list_name} not found")

        raw = await self.fetch(
            mode, self._api.get_allow_list, scope.account_id, scope.project_id, allow_list_id
        )
        if raw is None:
            return None
        spec = raw["spec"]
        ordering = desired or prior
        return AllowList(
            account_id=scope.account_id,
            project_id=scope.project_id,
            allow_list_id=allow_list_id,
            allow_list_name=spec["name"],
            allow_list_description=spec.get("description", ""),
            cidr_list=keep_caller_order(ordering.cidr_list, spec.get("allow_list") or []),
            cluster_ids=list(raw["info"].get("cluster_ids") or []),
        )

    async def _find_id(self, scope: Scope, name: str) -> str | None:
        allow_lists = await self.call(self._api.list_allow_lists, scope.account_id, scope.project_id)
        for allow_list in allow_lists:
            if allow_list["spec"]["name"] == name:
                return allow_list["info"]["id"]
        return None

    async def update(self, desired: AllowList, prior: AllowList) -> AllowList:
        raise UnsupportedOperationError(
            "Updating allow lists is not currently supported. Delete and recreate the provider.",
            title="Unable to update allow list",
        )

    async def delete(self, prior: AllowList) -> None:
        scope = await self.scope()
        allow_list_id = self.require_id(prior, "allow_list_id")

        for cluster_id in prior.cluster_ids or []:
            await self._detach(scope, cluster_id, allow_list_id)

        await self.call(self._api.delete_allow_list, scope.account_id, scope.project_id, allow_list_id)
        logger.info("Allow list deleted", extra={"allow_list_id": allow_list_id})

    async def _detach(self, scope: Scope, cluster_id: str, allow_list_id: str) -> None:
        try:
            cluster = await self.call(
                self._api.get_cluster, scope.account_id, scope.project_id, cluster_id
            )
            if cluster["info"].get("state") == CLUSTER_DELETING:
                logger.debug("Cluster is being deleted", extra={"cluster_id": cluster_id})
                return
            attached = await self.call(
                self._api.list_cluster_allow_lists, scope.account_id, scope.project_id, cluster_id
            )
        except NotFoundError:
            logger.debug("Cluster no longer exists", extra={"cluster_id": cluster_id})
            return

        remaining = [a["info"]["id"] for a in attached if a["info"]["id"] != allow_list_id]
        await self.call(
            self._api.set_cluster_allow_lists,
            scope.account_id,
            scope.project_id,
            cluster_id,
            remaining,
        )
        await self.wait_for_task(
            scope,
            cluster_id,
            TASK_EDIT_ALLOW_LIST,
            "allow list detachment",
            max_duration_seconds=ALLOW_LIST_DETACH_TIMEOUT_SECONDS,
            failure_message=f"unable to edit network allow list for cluster {cluster_id}",
        )
