"""YugabyteDB Aeon API mock for engine-level testing.

Provides an in-memory implementation of the public API the reconcilers
call, so whole reconciliation passes run without network access.

Key Features:
- In-memory state for clusters, VPCs, allow lists, backups, read replicas,
  integrations and DB audit logging configs
- Asynchronous settlement simulation (transient states, task tracking)
- Error injection per client method
- Optional reversed list order to exercise caller-order restoration
- A virtual clock so polling runs without waiting

Usage:
    from ybm_mock import FakeClock, MockYbmContext

    clock = FakeClock()
    with MockYbmContext(settle_after=2) as ctx:
        engine = Engine(config, poller=OperationPoller(clock=clock, sleep=clock.sleep))
        await engine.apply(resources)
        assert ctx.state.call_count("create_cluster") == 1
"""

from .client import MockYbmApiClient
from .clock import FakeClock
from .context import MockYbmContext, mock_ybm_context
from .state import MOCK_ACCOUNT_ID, MOCK_PROJECT_ID, MockEntity, MockYbmState

__all__ = [
    "MOCK_ACCOUNT_ID",
    "MOCK_PROJECT_ID",
    "FakeClock",
    "MockEntity",
    "MockYbmApiClient",
    "MockYbmContext",
    "MockYbmState",
    "mock_ybm_context",
]
