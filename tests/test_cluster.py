"""Engine-level tests for the cluster reconciler.

These tests use MockYbmContext to run whole reconciliation passes against an
in-memory service, with a FakeClock so polling never waits.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
from ybm_mock import MOCK_ACCOUNT_ID, MOCK_PROJECT_ID, FakeClock, MockYbmApiClient, MockYbmContext, MockYbmState
from ybm_mock.state import MOCK_CERTIFICATE

from ybm_controller.config import Config, FeatureFlags
from ybm_controller.errors import ConfigurationError, OperationFailed, OperationTimeout
from ybm_controller.models import Cluster, ConnectionPoolingState, DesiredState, ResourceKind
from ybm_controller.poller import OperationPoller
from ybm_controller.reconciler import Action, Engine
from ybm_controller.spec_loader import PlannedResource

SOURCE_CLUSTER_SPEC: dict[str, Any] = {
    "name": "source",
    "cluster_info": {"cluster_type": "SYNCHRONOUS", "cluster_tier": "PAID"},
    "cluster_region_info": [
        {"placement_info": {"cloud_info": {"code": "AWS", "region": "us-west-2"}, "num_nodes": 1}}
    ],
}


def make_cluster(**overrides: Any) -> Cluster:
    data: dict[str, Any] = {
        "cluster_name": "orders",
        "cloud_type": "AWS",
        "cluster_type": "SYNCHRONOUS",
        "cluster_tier": "PAID",
        "credentials": {"username": "admin", "password": "secret"},
        "cluster_region_info": [{"region": "us-west-2", "num_nodes": 3, "num_cores": 2}],
    }
    data.update(overrides)
    return Cluster.model_validate(data)


def planned(cluster: Cluster) -> PlannedResource:
    return PlannedResource(kind=ResourceKind.CLUSTER, name=cluster.cluster_name, spec=cluster)


def seed_allow_list(state: MockYbmState, name: str) -> str:
    client = MockYbmApiClient(state)
    response = client.create_allow_list(
        MOCK_ACCOUNT_ID,
        MOCK_PROJECT_ID,
        {"name": name, "description": name, "allow_list": ["10.0.0.0/24"]},
    )
    return response["info"]["id"]


class TestClusterLifecycle:
    """Create, read, update and delete of a cluster through the engine."""

    @pytest.fixture
    def config(self, tmp_path: Path) -> Config:
        """Create a test configuration with a fixed scope."""
        return Config(
            api_key="test-key",
            account_id=MOCK_ACCOUNT_ID,
            project_id=MOCK_PROJECT_ID,
            state_file=tmp_path / "state.json",
        )

    @pytest.fixture
    def clock(self) -> FakeClock:
        return FakeClock()

    def engine(self, config: Config, clock: FakeClock) -> Engine:
        return Engine(config, poller=OperationPoller(clock=clock, sleep=clock.sleep))

    @pytest.mark.asyncio
    async def test_create(self, config: Config, clock: FakeClock) -> None:
        """Test that a new cluster is created and its settled state recorded."""
        with MockYbmContext() as ctx:
            engine = self.engine(config, clock)

            results = await engine.apply([planned(make_cluster())])

            result = results[0]
            assert result.error is None
            assert result.action == Action.CREATE
            assert ctx.state.call_count("create_cluster") == 1

            state = engine.states["Cluster/orders"]
            assert isinstance(state, Cluster)
            assert state.cluster_id is not None
            assert state.cluster_info is not None
            assert state.cluster_info.state == "ACTIVE"
            assert state.cluster_certificate == MOCK_CERTIFICATE
            assert state.desired_state == DesiredState.ACTIVE
            # Write-only values come from the desired state
            assert state.credentials.password == "secret"

    @pytest.mark.asyncio
    async def test_create_sends_encoded_credentials(self, config: Config, clock: FakeClock) -> None:
        """Test that credentials are base64 encoded for both APIs."""
        with MockYbmContext() as ctx:
            await self.engine(config, clock).apply([planned(make_cluster())])

            payload = ctx.state.calls_to("create_cluster")[0].args[0]
            assert payload["db_credentials"]["ysql"] == {"username": "YWRtaW4=", "password": "c2VjcmV0"}
            assert payload["db_credentials"]["ycql"] == payload["db_credentials"]["ysql"]

    @pytest.mark.asyncio
    async def test_create_polls_until_settled(self, config: Config, clock: FakeClock) -> None:
        """Test that transient states are polled through at the configured interval."""
        with MockYbmContext(settle_after=2) as ctx:
            results = await self.engine(config, clock).apply([planned(make_cluster())])

            assert results[0].error is None
            assert clock.sleeps
            assert set(clock.sleeps) == {config.poll_interval_seconds}
            assert ctx.state.call_count("latest_task_state") == 3

    @pytest.mark.asyncio
    async def test_apply_twice_is_noop(self, config: Config, clock: FakeClock) -> None:
        """Test that a converged cluster is left alone."""
        with MockYbmContext() as ctx:
            engine = self.engine(config, clock)
            await engine.apply([planned(make_cluster())])
            mutations = ctx.state.mutating_calls()

            results = await engine.apply([planned(make_cluster())])

            assert results[0].action == Action.NOOP
            assert results[0].drift == []
            assert ctx.state.mutating_calls() == mutations

    @pytest.mark.asyncio
    async def test_update_node_count(self, config: Config, clock: FakeClock) -> None:
        """Test that a changed node count edits the cluster at its current version."""
        with MockYbmContext() as ctx:
            engine = self.engine(config, clock)
            await engine.apply([planned(make_cluster())])

            scaled = make_cluster(cluster_region_info=[{"region": "us-west-2", "num_nodes": 5, "num_cores": 2}])
            results = await engine.apply([planned(scaled)])

            assert results[0].error is None
            assert results[0].action == Action.UPDATE
            assert [item.path for item in results[0].drift] == ["cluster_region_info.0.num_nodes"]
            assert ctx.state.call_count("edit_cluster") == 1

            edit_payload = ctx.state.calls_to("edit_cluster")[0].args[1]
            assert edit_payload["cluster_info"]["version"] == 1

            state = engine.states["Cluster/orders"]
            assert state.cluster_region_info[0].num_nodes == 5
            assert state.cluster_version == "2"

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, config: Config, clock: FakeClock) -> None:
        """Test that desired_state pauses and resumes without editing the spec."""
        with MockYbmContext(settle_after=1) as ctx:
            engine = self.engine(config, clock)
            await engine.apply([planned(make_cluster())])

            paused = await engine.apply([planned(make_cluster(desired_state="paused"))])

            assert paused[0].error is None
            assert paused[0].action == Action.UPDATE
            assert ctx.state.call_count("pause_cluster") == 1
            assert engine.states["Cluster/orders"].desired_state == DesiredState.PAUSED

            resumed = await engine.apply([planned(make_cluster(desired_state="Active"))])

            assert resumed[0].error is None
            assert ctx.state.call_count("resume_cluster") == 1
            assert ctx.state.call_count("edit_cluster") == 0
            assert engine.states["Cluster/orders"].desired_state == DesiredState.ACTIVE

    @pytest.mark.asyncio
    async def test_create_paused(self, config: Config, clock: FakeClock) -> None:
        """Test that a cluster declared paused is paused right after creation."""
        with MockYbmContext() as ctx:
            engine = self.engine(config, clock)

            results = await engine.apply([planned(make_cluster(desired_state="Paused"))])

            assert results[0].error is None
            cluster_id = engine.states["Cluster/orders"].cluster_id
            assert ctx.state.cluster_state(cluster_id) == "PAUSED"

    @pytest.mark.asyncio
    async def test_allow_lists_keep_caller_order(self, config: Config, clock: FakeClock) -> None:
        """Test that allow list ids come back in declared order from a reordering service."""
        with MockYbmContext(reverse_lists=True) as ctx:
            first = seed_allow_list(ctx.state, "office")
            second = seed_allow_list(ctx.state, "vpn")
            engine = self.engine(config, clock)
            cluster = make_cluster(cluster_allow_list_ids=[second, first])

            results = await engine.apply([planned(cluster)])

            assert results[0].error is None
            assert ctx.state.calls_to("set_cluster_allow_lists")[0].args[1] == [second, first]
            assert engine.states["Cluster/orders"].cluster_allow_list_ids == [second, first]

            again = await engine.apply([planned(cluster)])
            assert again[0].action == Action.NOOP

    @pytest.mark.asyncio
    async def test_allow_lists_replaced(self, config: Config, clock: FakeClock) -> None:
        """Test that a changed allow list set is applied on update."""
        with MockYbmContext() as ctx:
            first = seed_allow_list(ctx.state, "office")
            second = seed_allow_list(ctx.state, "vpn")
            engine = self.engine(config, clock)
            await engine.apply([planned(make_cluster(cluster_allow_list_ids=[first]))])

            results = await engine.apply([planned(make_cluster(cluster_allow_list_ids=[second]))])

            assert results[0].action == Action.UPDATE
            assert ctx.state.call_count("set_cluster_allow_lists") == 2
            assert ctx.state.allow_lists[first].info["cluster_ids"] == []
            assert engine.states["Cluster/orders"].cluster_allow_list_ids == [second]

    @pytest.mark.asyncio
    async def test_backup_schedule(self, config: Config, clock: FakeClock) -> None:
        """Test that the backup schedule is edited, keeping the server description."""
        with MockYbmContext() as ctx:
            engine = self.engine(config, clock)
            cluster = make_cluster(
                backup_schedules=[{"state": "ACTIVE", "retention_period_in_days": 10, "time_interval_in_days": 2}]
            )

            results = await engine.apply([planned(cluster)])

            assert results[0].error is None
            payload = ctx.state.calls_to("edit_backup_schedule")[0].args[1]
            assert payload == {
                "state": "ACTIVE",
                "retention_period_in_days": 10,
                "description": "Default backup schedule",
                "time_interval_in_days": 2,
            }
            schedule = engine.states["Cluster/orders"].backup_schedules[0]
            assert schedule.retention_period_in_days == 10
            assert schedule.incremental_interval_in_mins is None

            again = await engine.apply([planned(cluster)])
            assert again[0].action == Action.NOOP

    @pytest.mark.asyncio
    async def test_restore_on_create(self, config: Config, clock: FakeClock) -> None:
        """Test that restore_backup_id restores into the new cluster."""
        with MockYbmContext() as ctx:
            source_id = ctx.state.add_cluster(SOURCE_CLUSTER_SPEC)
            backup = MockYbmApiClient(ctx.state).create_backup(
                MOCK_ACCOUNT_ID, MOCK_PROJECT_ID, {"cluster_id": source_id, "retention_period_in_days": 1}
            )
            backup_id = backup["info"]["id"]
            engine = self.engine(config, clock)

            results = await engine.apply([planned(make_cluster(restore_backup_id=backup_id))])

            assert results[0].error is None
            state = engine.states["Cluster/orders"]
            assert ctx.state.calls_to("restore_backup")[0].args == (backup_id, state.cluster_id)
            assert state.restore_backup_id == backup_id

    @pytest.mark.asyncio
    async def test_stable_track_alias(self, config: Config, clock: FakeClock) -> None:
        """Test that "Stable" resolves to the production track and reads back as "Stable"."""
        with MockYbmContext() as ctx:
            engine = self.engine(config, clock)
            cluster = make_cluster(database_track="Stable")

            await engine.apply([planned(cluster)])

            payload = ctx.state.calls_to("create_cluster")[0].args[0]
            assert payload["cluster_spec"]["software_info"] == {"track_id": "track-stable"}
            assert engine.states["Cluster/orders"].database_track == "Stable"
            assert (await engine.apply([planned(cluster)]))[0].action == Action.NOOP

    @pytest.mark.asyncio
    async def test_regions_keep_caller_order(self, config: Config, clock: FakeClock) -> None:
        """Test that regions are stored in declared order although served reversed."""
        regions = [
            {"region": "us-west-2", "num_nodes": 3, "num_cores": 2},
            {"region": "us-east-1", "num_nodes": 3, "num_cores": 2, "is_default": True},
        ]
        with MockYbmContext(reverse_lists=True):
            engine = self.engine(config, clock)
            cluster = make_cluster(cluster_type="GEO_PARTITIONED", cluster_region_info=regions)

            await engine.apply([planned(cluster)])

            state = engine.states["Cluster/orders"]
            assert [r.region for r in state.cluster_region_info] == ["us-west-2", "us-east-1"]
            assert state.cluster_region_info[1].is_default is True
            assert (await engine.apply([planned(cluster)]))[0].action == Action.NOOP

    @pytest.mark.asyncio
    async def test_refresh_stable_under_reordering(self, config: Config, clock: FakeClock) -> None:
        """Test that repeated refreshes store identical state when regions are served reversed."""
        regions = [
            {"region": "us-west-2", "num_nodes": 3, "num_cores": 2, "is_default": True},
            {"region": "us-east-1", "num_nodes": 3, "num_cores": 2},
            {"region": "us-east-2", "num_nodes": 3, "num_cores": 2},
        ]
        with MockYbmContext(reverse_lists=True):
            engine = self.engine(config, clock)
            cluster = make_cluster(cluster_type="GEO_PARTITIONED", cluster_region_info=regions)
            await engine.apply([planned(cluster)])

            await engine.refresh([planned(cluster)])
            first = engine.states["Cluster/orders"]
            await engine.refresh([planned(cluster)])
            second = engine.states["Cluster/orders"]

            assert first.model_dump_json() == second.model_dump_json()
            assert [r.region for r in second.cluster_region_info] == ["us-west-2", "us-east-1", "us-east-2"]

    @pytest.mark.asyncio
    async def test_delete(self, config: Config, clock: FakeClock) -> None:
        """Test that destroy deletes the cluster and forgets its state."""
        with MockYbmContext() as ctx:
            engine = self.engine(config, clock)
            await engine.apply([planned(make_cluster())])
            cluster_id = engine.states["Cluster/orders"].cluster_id

            results = await engine.destroy([planned(make_cluster())])

            assert results[0].error is None
            assert results[0].action == Action.DELETE
            assert ctx.state.calls_to("delete_cluster")[0].args == (cluster_id,)
            assert "Cluster/orders" not in engine.states
            assert cluster_id not in ctx.state.clusters


class TestClusterFailures:
    """Failure paths of cluster passes."""

    @pytest.fixture
    def config(self, tmp_path: Path) -> Config:
        """Create a test configuration with a fixed scope."""
        return Config(
            api_key="test-key",
            account_id=MOCK_ACCOUNT_ID,
            project_id=MOCK_PROJECT_ID,
            state_file=tmp_path / "state.json",
        )

    @pytest.mark.asyncio
    async def test_create_task_failed(self, config: Config) -> None:
        """Test that a failed creation task fails the pass but keeps the submitted id."""
        clock = FakeClock()
        with MockYbmContext() as ctx:
            ctx.state.failed_task_types.add("CREATE_CLUSTER")
            engine = Engine(config, poller=OperationPoller(clock=clock, sleep=clock.sleep))

            results = await engine.apply([planned(make_cluster())])

            assert isinstance(results[0].error, OperationFailed)
            assert results[0].error.message == "cluster creation operation failed"
            assert engine.states["Cluster/orders"].cluster_id == next(iter(ctx.state.clusters))

    @pytest.mark.asyncio
    async def test_create_timeout(self, config: Config) -> None:
        """Test that a task that never appears ends in OperationTimeout at the deadline."""
        clock = FakeClock()
        with MockYbmContext() as ctx:
            ctx.state.silent_task_types.add("CREATE_CLUSTER")
            engine = Engine(config, poller=OperationPoller(clock=clock, sleep=clock.sleep))

            results = await engine.apply([planned(make_cluster())])

            assert isinstance(results[0].error, OperationTimeout)
            assert clock.total_slept == config.operation_timeout_seconds

    @pytest.mark.asyncio
    async def test_timed_out_create_adopted(self, config: Config) -> None:
        """Test that a cluster whose creation timed out is adopted by the next pass."""
        clock = FakeClock()
        with MockYbmContext() as ctx:
            ctx.state.silent_task_types.add("CREATE_CLUSTER")
            engine = Engine(config, poller=OperationPoller(clock=clock, sleep=clock.sleep))
            first = await engine.apply([planned(make_cluster())])
            assert isinstance(first[0].error, OperationTimeout)
            assert engine.states["Cluster/orders"].cluster_id == next(iter(ctx.state.clusters))

            ctx.state.silent_task_types.clear()
            results = await engine.apply([planned(make_cluster())])

            assert results[0].error is None
            assert results[0].action == Action.NOOP
            assert ctx.state.call_count("create_cluster") == 1
            assert len(ctx.state.clusters) == 1

    @pytest.mark.asyncio
    async def test_state_without_id_rejected(self, config: Config) -> None:
        """Test that recorded state missing its cluster id fails the pass before any call."""
        with MockYbmContext() as ctx:
            engine = Engine(config, states={"Cluster/orders": make_cluster()})

            results = await engine.apply([planned(make_cluster())])

            assert isinstance(results[0].error, ConfigurationError)
            assert "has no cluster_id" in results[0].error.message
            assert ctx.state.mutating_calls() == []

    @pytest.mark.asyncio
    async def test_edit_without_task_succeeds(self, config: Config) -> None:
        """Test that an edit spawning no task is treated as complete."""
        clock = FakeClock()
        with MockYbmContext() as ctx:
            ctx.state.silent_task_types.add("EDIT_CLUSTER")
            engine = Engine(config, poller=OperationPoller(clock=clock, sleep=clock.sleep))
            await engine.apply([planned(make_cluster())])

            scaled = make_cluster(cluster_region_info=[{"region": "us-west-2", "num_nodes": 4, "num_cores": 2}])
            results = await engine.apply([planned(scaled)])

            assert results[0].error is None
            assert engine.states["Cluster/orders"].cluster_region_info[0].num_nodes == 4

    @pytest.mark.asyncio
    async def test_pooling_requires_flag(self, config: Config) -> None:
        """Test that pooling state without the feature flag is rejected before any call."""
        with MockYbmContext() as ctx:
            engine = Engine(config)

            results = await engine.apply([planned(make_cluster(desired_connection_pooling_state="Enabled"))])

            assert isinstance(results[0].error, ConfigurationError)
            assert ctx.state.mutating_calls() == []

    @pytest.mark.asyncio
    async def test_pooling_with_flag(self, tmp_path: Path) -> None:
        """Test that pooling is enabled after creation when the flag is on."""
        config = Config(
            api_key="test-key",
            account_id=MOCK_ACCOUNT_ID,
            project_id=MOCK_PROJECT_ID,
            state_file=tmp_path / "state.json",
            feature_flags=FeatureFlags(connection_pooling=True),
        )
        clock = FakeClock()
        with MockYbmContext() as ctx:
            engine = Engine(config, poller=OperationPoller(clock=clock, sleep=clock.sleep))
            cluster = make_cluster(desired_connection_pooling_state="enabled")

            results = await engine.apply([planned(cluster)])

            assert results[0].error is None
            assert ctx.state.calls_to("set_connection_pooling")[0].args[1] == {"operation": "ENABLE"}
            state = engine.states["Cluster/orders"]
            assert state.desired_connection_pooling_state == ConnectionPoolingState.ENABLED
            assert (await engine.apply([planned(cluster)]))[0].action == Action.NOOP

    @pytest.mark.asyncio
    async def test_duplicate_name_rejected(self, config: Config) -> None:
        """Test that the service's conflict on a taken name fails the pass."""
        with MockYbmContext() as ctx:
            ctx.state.add_cluster({**SOURCE_CLUSTER_SPEC, "name": "orders"})
            engine = Engine(config)

            results = await engine.apply([planned(make_cluster())])

            assert results[0].error is not None
            assert "already exists" in str(results[0].error)
