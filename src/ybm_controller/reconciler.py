"""Reconciliation engine over a declared plan.

For every declared resource the engine runs one pass:
1. Refresh the prior state (a resource gone remotely drops its prior state)
2. Detect drift between the declared spec and the refreshed state
3. Create, update, or leave it alone
4. Record the settled state, keyed "<Kind>/<name>"

ORDERING:
Kinds run in dependency tiers so referenced resources exist before the ones
that reference them:
- Tier 0: Vpc, AllowList, Integration
- Tier 1: Cluster
- Tier 2: ReadReplicas, Backup, DbAuditLogging

Passes within a tier run concurrently, bounded by max_concurrent_passes.
Destroy walks the tiers in reverse.

SECURITY: Every mutating pass holds the resource's keyed lock, so two passes
never mutate the same remote resource at once within this process.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .allow_list import AllowListReconciler
from .api_client import YbmApiClient
from .audit_logging import DbAuditLoggingReconciler
from .backup import BackupReconciler
from .base import ReconcileContext, ResourceReconciler
from .cluster import ClusterReconciler
from .config import Config
from .drift import DriftDetector, DriftItem
from .errors import NotFoundError, ReconcileError
from .integration import IntegrationReconciler
from .locking import ResourceLockManager, resource_key
from .models import ResourceKind, ResourceModel
from .poller import OperationPoller
from .read_replica import ReadReplicasReconciler
from .spec_loader import PlannedResource
from .state_reader import ReadMode
from .vpc import VpcReconciler

logger = logging.getLogger(__name__)

RECONCILERS: dict[ResourceKind, type[ResourceReconciler[Any]]] = {
    ResourceKind.VPC: VpcReconciler,
    ResourceKind.ALLOW_LIST: AllowListReconciler,
    ResourceKind.INTEGRATION: IntegrationReconciler,
    ResourceKind.CLUSTER: ClusterReconciler,
    ResourceKind.READ_REPLICAS: ReadReplicasReconciler,
    ResourceKind.BACKUP: BackupReconciler,
    ResourceKind.DB_AUDIT_LOGGING: DbAuditLoggingReconciler,
}

KIND_TIERS: tuple[frozenset[ResourceKind], ...] = (
    frozenset({ResourceKind.VPC, ResourceKind.ALLOW_LIST, ResourceKind.INTEGRATION}),
    frozenset({ResourceKind.CLUSTER}),
    frozenset({ResourceKind.READ_REPLICAS, ResourceKind.BACKUP, ResourceKind.DB_AUDIT_LOGGING}),
)


class Action(str, Enum):
    """What a pass did (or, when planning, would do)."""

    CREATE = "create"
    UPDATE = "update"
    NOOP = "noop"
    DELETE = "delete"
    REFRESH = "refresh"


@dataclass
class ReconcileResult:
    """Result of a single resource pass."""

    kind: str
    name: str
    action: Action = Action.NOOP
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    drift: list[DriftItem] = field(default_factory=list)
    state: ResourceModel | None = None
    error: Exception | None = None

    @property
    def key(self) -> str:
        return resource_key(self.kind, self.name)

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the pass succeeded."""
        return self.error is None


def tiers_of(resources: Iterable[PlannedResource]) -> list[list[PlannedResource]]:
    """Group resources by dependency tier, keeping declaration order within each."""
    resources = list(resources)
    return [[r for r in resources if r.kind in tier] for tier in KIND_TIERS]


class Engine:
    """Runs plan, apply, refresh and destroy passes over declared resources.

    The engine owns the in-memory state map; persisting it is up to the
    caller (see spec_loader.save_state).
    """

    def __init__(
        self,
        config: Config,
        *,
        states: dict[str, ResourceModel] | None = None,
        poller: OperationPoller | None = None,
        detector: DriftDetector | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Validated configuration.
            states: Previously persisted state, keyed "<Kind>/<name>".
            poller: Operation poller; a default one is created when omitted.
            detector: Drift detector; defaults to the standard rules.
        """
        self._config = config
        self._api = YbmApiClient(config)
        self._poller = poller or OperationPoller()
        self._context = ReconcileContext(config=config, api=self._api, poller=self._poller)
        self._reconcilers = {kind: cls(self._context) for kind, cls in RECONCILERS.items()}
        self._locks = ResourceLockManager(config.lock_timeout_seconds)
        self._detector = detector or DriftDetector()
        self._semaphore = asyncio.Semaphore(config.max_concurrent_passes)
        self._states: dict[str, ResourceModel] = dict(states or {})

    @property
    def config(self) -> Config:
        return self._config

    @property
    def states(self) -> dict[str, ResourceModel]:
        """A snapshot of the current state map."""
        return dict(self._states)

    @property
    def locks(self) -> ResourceLockManager:
        return self._locks

    def reconciler_for(self, kind: ResourceKind) -> ResourceReconciler[Any]:
        return self._reconcilers[kind]

    # =========================================================================
    # Public operations
    # =========================================================================

    async def plan(self, resources: Sequence[PlannedResource]) -> list[ReconcileResult]:
        """Compute what apply would do, without mutating anything."""
        return await self._run_tiers(tiers_of(resources), lambda r: self._converge(r, dry_run=True))

    async def apply(self, resources: Sequence[PlannedResource]) -> list[ReconcileResult]:
        """Converge every declared resource to its spec."""
        return await self._run_tiers(tiers_of(resources), lambda r: self._converge(r, dry_run=False))

    async def refresh(self, resources: Sequence[PlannedResource]) -> list[ReconcileResult]:
        """Re-read every tracked resource; resources gone remotely are dropped."""
        return await self._run_tiers(tiers_of(resources), self._refresh)

    async def destroy(self, resources: Sequence[PlannedResource]) -> list[ReconcileResult]:
        """Delete every declared resource, dependents first."""
        tiers = [list(reversed(tier)) for tier in reversed(tiers_of(resources))]
        return await self._run_tiers(tiers, self._destroy)

    def cancel(self) -> None:
        """Abort in-flight waits; they fail with OperationTimeout."""
        logger.info("Cancellation requested")
        self._poller.cancel()

    def shutdown(self) -> None:
        """Cancel in-flight waits and release the HTTP transport."""
        self.cancel()
        self._api.close()

    # =========================================================================
    # Passes
    # =========================================================================

    async def _run_tiers(self, tiers: list[list[PlannedResource]], run_pass: Any) -> list[ReconcileResult]:
        results: list[ReconcileResult] = []
        for tier in tiers:
            if tier:
                results.extend(await asyncio.gather(*(run_pass(r) for r in tier)))
        return results

    async def _converge(self, resource: PlannedResource, *, dry_run: bool) -> ReconcileResult:
        result = ReconcileResult(kind=resource.kind.value, name=resource.name)
        reconciler = self._reconcilers[resource.kind]
        try:
            async with self._semaphore, self._locks.hold(result.key):
                prior = await self._refresh_prior(resource, reconciler)
                if prior is None:
                    result.action = Action.CREATE
                    if not dry_run:
                        result.state = await reconciler.create(
                            resource.spec, on_submitted=functools.partial(self._record, result.key)
                        )
                else:
                    report = self._detector.detect(resource.kind, resource.spec, prior)
                    result.drift = report.items
                    if report.has_drift:
                        result.action = Action.UPDATE
                        if not dry_run:
                            result.state = await reconciler.update(resource.spec, prior)
                    else:
                        result.state = prior
                if not dry_run and result.state is not None:
                    self._states[result.key] = result.state
        except ReconcileError as e:
            logger.error(
                "Resource pass failed",
                extra={"resource": result.key, "error_kind": e.kind.value, "error": str(e)},
            )
            result.error = e
        except Exception as e:
            logger.exception("Unexpected error during resource pass", extra={"resource": result.key})
            result.error = e

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    async def _refresh_prior(
        self, resource: PlannedResource, reconciler: ResourceReconciler[Any]
    ) -> ResourceModel | None:
        key = resource.key
        prior = self._states.get(key)
        if prior is None:
            return None
        try:
            return await reconciler.read(resource.spec, prior, ReadMode.REFRESH)
        except NotFoundError:
            logger.warning("Resource no longer exists, dropping prior state", extra={"resource": key})
            self._states.pop(key, None)
            return None

    async def _refresh(self, resource: PlannedResource) -> ReconcileResult:
        result = ReconcileResult(kind=resource.kind.value, name=resource.name, action=Action.REFRESH)
        reconciler = self._reconcilers[resource.kind]
        try:
            async with self._semaphore:
                result.state = await self._refresh_prior(resource, reconciler)
                if result.state is not None:
                    self._states[result.key] = result.state
        except ReconcileError as e:
            logger.error("Refresh failed", extra={"resource": result.key, "error": str(e)})
            result.error = e
        except Exception as e:
            logger.exception("Unexpected error during refresh", extra={"resource": result.key})
            result.error = e

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    async def _destroy(self, resource: PlannedResource) -> ReconcileResult:
        result = ReconcileResult(kind=resource.kind.value, name=resource.name, action=Action.DELETE)
        reconciler = self._reconcilers[resource.kind]
        prior = self._states.get(result.key)
        try:
            async with self._semaphore, self._locks.hold(result.key):
                if prior is None:
                    result.action = Action.NOOP
                else:
                    current = await reconciler.read(resource.spec, prior, ReadMode.DELETE_PRECHECK)
                    if current is not None:
                        await reconciler.delete(current)
                    self._states.pop(result.key, None)
        except ReconcileError as e:
            logger.error("Delete failed", extra={"resource": result.key, "error": str(e)})
            result.error = e
        except Exception as e:
            logger.exception("Unexpected error during delete", extra={"resource": result.key})
            result.error = e

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    def _record(self, key: str, state: ResourceModel) -> None:
        # Survives a later failure of the same pass
        self._states[key] = state
        logger.debug("Recorded submitted resource", extra={"resource": key})

    def _log_result(self, result: ReconcileResult) -> None:
        """Log a pass result with structured data."""
        extra: dict[str, Any] = {
            "resource": result.key,
            "action": result.action.value,
            "duration_seconds": result.duration_seconds,
            "drift_paths": [item.path for item in result.drift],
        }
        if result.error is not None:
            extra["error"] = str(result.error)
            logger.error("Resource pass result", extra=extra)
        else:
            logger.info("Resource pass result", extra=extra)
