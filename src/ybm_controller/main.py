"""Process wiring: logging, engine construction, one-shot runs and the watch loop.

WATCH MODE:
The watch loop re-reads the plan files and applies them every interval until
SIGTERM/SIGINT. A signal also sets the poller's cancellation event, so an
in-flight wait fails fast with OperationTimeout instead of holding shutdown
for up to an hour.

After MAX_CONSECUTIVE_FAILURES failed cycles the circuit opens and the loop
pauses for CIRCUIT_BREAKER_RESET_SECONDS.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path

from .config import Config
from .errors import ConfigurationError
from .reconciler import Engine, ReconcileResult
from .spec_loader import SpecLoadError, load_plan, load_state, save_state

logger = logging.getLogger(__name__)

# Watch loop circuit breaker
MAX_CONSECUTIVE_FAILURES = 5
CIRCUIT_BREAKER_RESET_SECONDS = 300  # 5 minutes

# LogRecord attributes that are not caller-supplied extra fields
_RESERVED_LOG_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured JSON logging on stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the HTTP pipeline
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


class Command(str, Enum):
    PLAN = "plan"
    APPLY = "apply"
    REFRESH = "refresh"
    DESTROY = "destroy"


def build_engine(config: Config) -> Engine:
    """Create an engine seeded with the persisted state.

    Raises:
        SpecLoadError: If the state file is unreadable.
    """
    return Engine(config, states=load_state(config.state_file))


async def run_plan(engine: Engine, command: Command, plan_paths: list[Path]) -> list[ReconcileResult]:
    """Run one command over the plan files and persist the resulting state.

    Raises:
        SpecLoadError: If the plan files are invalid.
    """
    resources = load_plan(plan_paths)

    match command:
        case Command.PLAN:
            return await engine.plan(resources)
        case Command.APPLY:
            results = await engine.apply(resources)
        case Command.REFRESH:
            results = await engine.refresh(resources)
        case Command.DESTROY:
            results = await engine.destroy(resources)

    # Partial progress is persisted even when some passes failed
    save_state(engine.config.state_file, engine.states)
    return results


async def watch(
    engine: Engine,
    plan_paths: list[Path],
    interval_seconds: float,
    shutdown_event: asyncio.Event,
) -> None:
    """Apply the plan every interval until shutdown_event is set.

    Failed cycles are counted; MAX_CONSECUTIVE_FAILURES in a row open the
    circuit, and cycles are skipped for CIRCUIT_BREAKER_RESET_SECONDS.
    """
    consecutive_failures = 0
    circuit_open_until: datetime | None = None

    logger.info(
        "Starting watch loop",
        extra={"plan_files": [str(p) for p in plan_paths], "interval_seconds": interval_seconds},
    )

    while not shutdown_event.is_set():
        if circuit_open_until is not None:
            now = datetime.now(UTC)
            if now < circuit_open_until:
                remaining = (circuit_open_until - now).total_seconds()
                logger.warning(
                    "Circuit breaker open, skipping reconciliation",
                    extra={
                        "remaining_seconds": remaining,
                        "consecutive_failures": consecutive_failures,
                    },
                )
                try:
                    await asyncio.wait_for(
                        shutdown_event.wait(), timeout=min(remaining, interval_seconds)
                    )
                except TimeoutError:
                    pass
                continue
            logger.info("Circuit breaker reset, resuming reconciliation")
            circuit_open_until = None
            consecutive_failures = 0

        try:
            results = await run_plan(engine, Command.APPLY, plan_paths)
            failed = [r.key for r in results if not r.success]
        except SpecLoadError as e:
            logger.error("Failed to load plan", extra={"error": str(e)})
            failed = ["plan"]

        if failed:
            consecutive_failures += 1
            logger.warning(
                "Reconciliation cycle had failures",
                extra={"failed": failed, "consecutive_failures": consecutive_failures},
            )
            if consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                circuit_open_until = datetime.now(UTC) + timedelta(
                    seconds=CIRCUIT_BREAKER_RESET_SECONDS
                )
                logger.error(
                    "Circuit breaker opened after consecutive failures",
                    extra={
                        "consecutive_failures": consecutive_failures,
                        "reset_seconds": CIRCUIT_BREAKER_RESET_SECONDS,
                    },
                )
        else:
            consecutive_failures = 0

        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_seconds)
        except TimeoutError:
            # Interval elapsed
            pass

    logger.info("Watch loop shutdown complete")


async def main(plan_paths: list[Path], interval_seconds: float) -> int:
    """Run the watch loop until a termination signal.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        setup_logging()
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    setup_logging(config.log_level_value)

    try:
        engine = build_engine(config)
    except SpecLoadError as e:
        logger.error("Failed to load state", extra={"error": str(e)})
        return 1

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        shutdown_event.set()
        engine.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await watch(engine, plan_paths, interval_seconds, shutdown_event)
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1
    finally:
        engine.shutdown()

    logger.info("Controller stopped")
    return 0
