"""Poll path: periodic run snapshots merged into the step registry."""

from enum import Enum
from typing import Callable, List, Optional

import trio
from loguru import logger

from ..errors import EngineError, PollError
from ..execution.models import StepSource
from ..execution.registry import ExecutionStepRegistry
from .client import EngineClient
from .models import RunRecord

SnapshotHandler = Callable[[RunRecord], None]
FinishedHandler = Callable[["RunPoller"], None]


class PollStatus(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    FINISHED = "finished"
    STOPPED = "stopped"
    ERROR = "error"


class RunPoller:
    """
    Fetches one run every ``interval`` seconds after an initial ``start_delay``.

    Fetches never overlap. Polling ends when the run reaches a terminal
    status, when the engine reports a status it does not recognise, or on the
    first failed fetch, which sets ``status`` to ``error`` and ``error`` to
    the failure message. There is no retry.
    """

    def __init__(
        self,
        client: EngineClient,
        registry: ExecutionStepRegistry,
        run_id: str,
        interval: float = 1.0,
        start_delay: float = 1.0,
    ):
        self._client = client
        self._registry = registry
        self.run_id = run_id
        self.interval = interval
        self.start_delay = start_delay

        self.status = PollStatus.IDLE
        self.error: Optional[str] = None
        self.last_record: Optional[RunRecord] = None
        self.polls = 0

        self._cancel_scope: Optional[trio.CancelScope] = None
        self._snapshot_handlers: List[SnapshotHandler] = []
        self._finished_handlers: List[FinishedHandler] = []

    @classmethod
    def from_config(
        cls, config, client: EngineClient, registry: ExecutionStepRegistry, run_id: str
    ) -> "RunPoller":
        """Build a poller from a ``PollingConfig``."""
        return cls(
            client,
            registry,
            run_id,
            interval=config.interval_ms / 1000.0,
            start_delay=config.start_delay_ms / 1000.0,
        )

    @property
    def is_active(self) -> bool:
        return self.status == PollStatus.POLLING

    def on_snapshot(self, handler: SnapshotHandler) -> None:
        self._snapshot_handlers.append(handler)

    def on_finished(self, handler: FinishedHandler) -> None:
        """Called once when polling ends by itself (terminal status or error)."""
        self._finished_handlers.append(handler)

    async def start(self, nursery: trio.Nursery) -> None:
        if self.status != PollStatus.IDLE:
            logger.warning(f"Poller for run {self.run_id} already started")
            return
        self.status = PollStatus.POLLING
        self._cancel_scope = trio.CancelScope()
        nursery.start_soon(self._run, self._cancel_scope)

    def stop(self) -> None:
        if self._cancel_scope is not None:
            self._cancel_scope.cancel()
        if self.status in (PollStatus.IDLE, PollStatus.POLLING):
            self.status = PollStatus.STOPPED

    async def run(self) -> None:
        """Poll until the run ends. Usable without :meth:`start`."""
        self.status = PollStatus.POLLING
        await trio.sleep(self.start_delay)
        while self.status == PollStatus.POLLING:
            try:
                record = await self.poll_once()
            except PollError as e:
                self._finish(PollStatus.ERROR, error=str(e))
                return

            if self._should_stop(record):
                self._finish(PollStatus.FINISHED)
                return
            await trio.sleep(self.interval)

    async def poll_once(self) -> RunRecord:
        """Fetch one snapshot and merge its trace into the registry."""
        try:
            record = await self._client.get_run(self.run_id)
        except EngineError as e:
            raise PollError(str(e), run_id=self.run_id) from e

        self.polls += 1
        self.last_record = record
        self._registry.upsert_many(record.steps(), source=StepSource.POLL)
        logger.debug(f"Run {self.run_id} poll #{self.polls}: status={record.status}, steps={len(record.trace)}")

        for handler in list(self._snapshot_handlers):
            try:
                handler(record)
            except Exception as e:
                logger.error(f"Error in snapshot handler: {e}")
        return record

    async def _run(self, cancel_scope: trio.CancelScope) -> None:
        with cancel_scope:
            await self.run()

    def _should_stop(self, record: RunRecord) -> bool:
        if record.status is None:
            return False
        if record.run_status is None:
            logger.warning(f"Run {self.run_id} reported unknown status {record.status!r}, polling stopped")
            return True
        return record.run_status.is_terminal

    def _finish(self, status: PollStatus, error: Optional[str] = None) -> None:
        self.status = status
        self.error = error
        if error:
            logger.error(f"Polling run {self.run_id} failed: {error}")
        else:
            logger.info(f"Polling run {self.run_id} finished: {self.last_record.status if self.last_record else None}")

        for handler in list(self._finished_handlers):
            try:
                handler(self)
            except Exception as e:
                logger.error(f"Error in poll finished handler: {e}")
