"""On-demand backup reconciler."""

from __future__ import annotations

import logging

from .base import ResourceReconciler, SubmitHook
from .config import BACKUP_CREATE_TIMEOUT_SECONDS, BACKUP_DELETE_TIMEOUT_SECONDS
from .errors import UnsupportedOperationError
from .models import Backup, ResourceKind
from .state_reader import ReadMode
from .translator import build_backup_spec

logger = logging.getLogger(__name__)

BACKUP_SUCCEEDED = "SUCCEEDED"
BACKUP_FAILED = "FAILED"


class BackupReconciler(ResourceReconciler[Backup]):
    kind = ResourceKind.BACKUP
    model = Backup

    async def create(self, desired: Backup, on_submitted: SubmitHook | None = None) -> Backup:
        payload = build_backup_spec(desired)
        scope = await self.scope()
        response = await self.call(self._api.create_backup, scope.account_id, scope.project_id, payload)
        backup_id = response["info"]["id"]
        self.submitted(on_submitted, desired.model_copy(update={"backup_id": backup_id}))
        logger.info(
            "Backup started", extra={"cluster_id": desired.cluster_id, "backup_id": backup_id}
        )

        def fetch_state() -> str:
            return self._api.get_backup(scope.account_id, scope.project_id, backup_id)["info"]["state"]

        await self.wait_for_state(
            backup_id,
            "backup",
            fetch_state,
            success=(BACKUP_SUCCEEDED,),
            failure=(BACKUP_FAILED,),
            max_duration_seconds=BACKUP_CREATE_TIMEOUT_SECONDS,
            timeout_message="The operation timed out waiting for the backup to complete.",
        )
        state = await self.read(desired, desired.model_copy(update={"backup_id": backup_id}))
        assert state is not None
        return state

    async def read(
        self, desired: Backup | None, prior: Backup, mode: ReadMode = ReadMode.REFRESH
    ) -> Backup | None:
        scope = await self.scope()
        backup_id = self.require_id(prior, "backup_id")
        raw = await self.fetch(mode, self._api.get_backup, scope.account_id, scope.project_id, backup_id)
        if raw is None:
            return None
        spec = raw["spec"]
        return Backup(
            account_id=scope.account_id,
            project_id=scope.project_id,
            backup_id=backup_id,
            cluster_id=spec["cluster_id"],
            backup_description=spec.get("description"),
            retention_period_in_days=spec["retention_period_in_days"],
            most_recent=None,
            timestamp=None,
        )

    async def update(self, desired: Backup, prior: Backup) -> Backup:
        raise UnsupportedOperationError(
            "Updating backups is not currently supported. Delete and recreate the provider.",
            title="Unable to update backup.",
        )

    async def delete(self, prior: Backup) -> None:
        scope = await self.scope()
        backup_id = self.require_id(prior, "backup_id")
        await self.call(self._api.delete_backup, scope.account_id, scope.project_id, backup_id)
        await self.wait_until_gone(
            backup_id,
            "backup deletion",
            lambda: self._api.get_backup(scope.account_id, scope.project_id, backup_id),
            max_duration_seconds=BACKUP_DELETE_TIMEOUT_SECONDS,
            timeout_message="The operation timed out waiting for the backup deletion to complete.",
        )
        logger.info("Backup deleted", extra={"backup_id": backup_id})
