"""Shared plumbing for the per-resource reconcilers.

A reconciliation pass for one resource runs strictly in this order:

1. Translate (validate, resolve cross references, build the payload)
2. Submit the mutating call
3. Poll until settlement
4. Settlement read (restore caller ordering, merge write-only values)

The API client is synchronous; every call goes through ResourceReconciler.call,
which runs it on a worker thread under a timeout so the event loop never
blocks. Polling is delegated to the OperationPoller, the only component that
suspends between calls.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable, Collection
from dataclasses import dataclass, field
from typing import Any, ClassVar, Generic, TypeVar

from .api_client import YbmApiClient
from .config import Config
from .errors import ConfigurationError, NotFoundError, TransportError
from .models import ResourceKind, ResourceModel
from .poller import (
    TASK_NOT_FOUND,
    EditTaskCheck,
    Operation,
    OperationPoller,
    PollStatus,
    RetryPolicy,
    task_status,
)
from .state_reader import ReadMode
from .translator import ReferenceResolver

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=ResourceModel)

# Receives the partial state of a resource the service has accepted
SubmitHook = Callable[[ResourceModel], None]


@dataclass
class Scope:
    account_id: str
    project_id: str


@dataclass
class ReconcileContext:
    """Collaborators shared by every reconciler of one engine."""

    config: Config
    api: YbmApiClient
    poller: OperationPoller
    _scope: Scope | None = field(default=None, init=False)
    _scope_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)

    @property
    def policy(self) -> RetryPolicy:
        return RetryPolicy(
            interval_seconds=self.config.poll_interval_seconds,
            max_duration_seconds=self.config.operation_timeout_seconds,
        )

    @property
    def call_timeout_seconds(self) -> float:
        # Transport retries happen inside one call
        return self.config.request_timeout_seconds * (self.config.http_retry_total + 1)

    async def call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking call on a worker thread, bounded by the call timeout.

        Raises:
            TransportError: If the call does not return in time (retryable).
        """
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, functools.partial(fn, *args, **kwargs)),
                timeout=self.call_timeout_seconds,
            )
        except TimeoutError as e:
            name = getattr(fn, "__name__", "call")
            raise TransportError(f"{name} did not complete within {self.call_timeout_seconds}s") from e

    async def scope(self) -> Scope:
        """Account and project for every call, resolved once per engine."""
        async with self._scope_lock:
            if self._scope is None:
                account_id = self.config.account_id
                project_id = self.config.project_id
                if account_id is None or project_id is None:
                    accounts = await self.call(self.api.list_accounts)
                    self._scope = resolve_scope(accounts, account_id, project_id)
                else:
                    self._scope = Scope(account_id=account_id, project_id=project_id)
                logger.info(
                    "Resolved scope",
                    extra={
                        "account_id": self._scope.account_id,
                        "project_id": self._scope.project_id,
                    },
                )
            return self._scope


def resolve_scope(accounts: list[dict[str, Any]], account_id: str | None, project_id: str | None) -> Scope:
    """Pick the account and project from the accounts listing.

    Raises:
        ConfigurationError: When the choice is absent or ambiguous.
    """
    if account_id is None:
        if not accounts:
            raise ConfigurationError(
                "The user is not associated with any accounts.", title="Unable to get account ID"
            )
        if len(accounts) > 1:
            raise ConfigurationError(
                "The user is associated with multiple accounts, please provide an account ID.",
                title="Unable to get account ID",
            )
        account = accounts[0]
        account_id = account["info"]["id"]
    else:
        account = next((a for a in accounts if a["info"]["id"] == account_id), {"info": {}})

    if project_id is None:
        projects = account["info"].get("projects") or []
        if not projects:
            raise ConfigurationError(
                "The account is not associated with any projects.", title="Unable to get project ID"
            )
        if len(projects) > 1:
            raise ConfigurationError(
                "The account is associated with multiple projects, please provide a project ID.",
                title="Unable to get project ID",
            )
        project_id = projects[0]["info"]["id"]

    assert account_id is not None
    return Scope(account_id=account_id, project_id=project_id)


class ResourceReconciler(Generic[M]):
    """Base class: create, read, update and delete for one resource kind.

    Subclasses set `kind` and `model` and implement the four operations.
    """

    kind: ClassVar[ResourceKind]
    model: ClassVar[type[ResourceModel]]

    def __init__(self, context: ReconcileContext) -> None:
        self._context = context
        self._config = context.config
        self._api = context.api
        self._poller = context.poller

    # =========================================================================
    # Operations
    # =========================================================================

    async def create(self, desired: M, on_submitted: SubmitHook | None = None) -> M:
        """Create the resource and return its settled state.

        on_submitted receives a partial state as soon as the service has
        accepted the request, so a later failure does not lose the new id.
        """
        raise NotImplementedError

    async def read(self, desired: M | None, prior: M, mode: ReadMode = ReadMode.REFRESH) -> M | None:
        """Fetch the settled state of the resource identified by prior.

        Raises:
            NotFoundError: In REFRESH mode when the resource is gone.
        """
        raise NotImplementedError

    async def update(self, desired: M, prior: M) -> M:
        raise NotImplementedError

    async def delete(self, prior: M) -> None:
        raise NotImplementedError

    # =========================================================================
    # Helpers
    # =========================================================================

    def require_id(self, prior: M, field_name: str) -> str:
        """The remote id recorded in prior.

        Raises:
            ConfigurationError: If the recorded state carries no id.
        """
        value = getattr(prior, field_name, None)
        if not value:
            raise ConfigurationError(
                f"{self.kind.value} {prior.resource_name} has no {field_name} in its recorded state",
                title="Invalid state",
            )
        return value

    def submitted(self, on_submitted: SubmitHook | None, state: M) -> None:
        if on_submitted is not None:
            on_submitted(state)

    async def call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await self._context.call(fn, *args, **kwargs)

    async def scope(self) -> Scope:
        return await self._context.scope()

    def resolver(self, scope: Scope) -> ReferenceResolver:
        """A fresh resolver; its caches live for one pass."""
        api = self._api
        return ReferenceResolver(
            find_vpcs=lambda name: [
                vpc for vpc in api.list_vpcs(scope.account_id, scope.project_id, name)
                if vpc["spec"]["name"] == name
            ],
            list_tracks=lambda: api.list_tracks(scope.account_id),
            list_node_options=lambda cloud, tier, region: api.list_node_options(
                scope.account_id, scope.project_id, cloud, tier, region
            ),
        )

    def policy(self, max_duration_seconds: float | None = None) -> RetryPolicy:
        policy = self._context.policy
        if max_duration_seconds is None:
            return policy
        return policy.with_deadline(min(max_duration_seconds, policy.max_duration_seconds))

    async def wait_for_state(
        self,
        resource_id: str,
        description: str,
        fetch_state: Callable[[], str],
        *,
        success: Collection[str],
        failure: Collection[str] = (),
        max_duration_seconds: float | None = None,
        timeout_message: str | None = None,
        failure_message: str | None = None,
    ) -> None:
        """Poll a resource state until it is in success (or failure)."""

        async def check() -> PollStatus:
            state = await self.call(fetch_state)
            if state in success:
                return PollStatus.SUCCEEDED
            if state in failure:
                return PollStatus.FAILED
            return PollStatus.PENDING

        await self._poller.wait(
            Operation(
                resource_id=resource_id,
                description=description,
                policy=self.policy(max_duration_seconds),
                timeout_message=timeout_message,
                failure_message=failure_message,
            ),
            check,
        )

    async def wait_until_gone(
        self,
        resource_id: str,
        description: str,
        fetch: Callable[[], Any],
        *,
        max_duration_seconds: float | None = None,
        timeout_message: str | None = None,
    ) -> None:
        """Poll until fetching the resource raises NotFoundError."""

        async def check() -> PollStatus:
            try:
                await self.call(fetch)
            except NotFoundError:
                return PollStatus.SUCCEEDED
            return PollStatus.PENDING

        await self._poller.wait(
            Operation(
                resource_id=resource_id,
                description=description,
                policy=self.policy(max_duration_seconds),
                timeout_message=timeout_message,
            ),
            check,
        )

    async def wait_for_task(
        self,
        scope: Scope,
        entity_id: str,
        task_type: str,
        description: str,
        *,
        edit: bool = False,
        max_duration_seconds: float | None = None,
        timeout_message: str | None = None,
        failure_message: str | None = None,
    ) -> None:
        """Poll the newest task of task_type for entity_id until it settles.

        With edit=True a missing or already-finished task means the edit
        spawned no task (see EditTaskCheck).
        """

        async def fetch_state() -> str:
            state = await self.call(
                self._api.latest_task_state,
                scope.account_id,
                scope.project_id,
                entity_id,
                task_type,
            )
            return state or TASK_NOT_FOUND

        async def check() -> PollStatus:
            return task_status(await fetch_state())

        await self._poller.wait(
            Operation(
                resource_id=entity_id,
                description=description,
                policy=self.policy(max_duration_seconds),
                timeout_message=timeout_message,
                failure_message=failure_message,
            ),
            EditTaskCheck(fetch_state) if edit else check,
        )

    async def fetch(self, mode: ReadMode, fn: Callable[..., Any], *args: Any) -> Any:
        """Call fn; a NotFoundError reads as None during a delete precheck."""
        try:
            return await self.call(fn, *args)
        except NotFoundError:
            if mode == ReadMode.DELETE_PRECHECK:
                return None
            raise
