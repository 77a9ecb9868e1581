"""Wallet monitor - the periodic control loop.

Every ``interval_seconds`` the monitor takes a snapshot of the active
delegations granted to the agent and evaluates each one in its own worker:

    indexer.get_approvals -> rules.evaluate_all -> executor.reconcile
    -> executor.execute

Cycles never overlap. A tick that fires while a cycle is still running is
skipped and counted, not queued.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

from wallet_autopilot.agent.executor import ExecutionOutcome, OutcomeStatus, TransactionExecutor
from wallet_autopilot.agent.registry import DelegationRegistry
from wallet_autopilot.agent.rules import RuleEngine
from wallet_autopilot.chain.indexer import IndexerClient
from wallet_autopilot.config import MonitorConfig
from wallet_autopilot.storage.models import DelegationRecord, utcnow

logger = logging.getLogger("wallet_autopilot.monitor")


@dataclass
class DelegationReport:
    """What one cycle did for one delegation."""

    delegation_id: str
    delegator: str
    approvals: int = 0
    reconciled: int = 0
    outcomes: list[ExecutionOutcome] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "delegation_id": self.delegation_id,
            "delegator": self.delegator,
            "approvals": self.approvals,
            "reconciled": self.reconciled,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "error": self.error,
        }


@dataclass
class CycleReport:
    started_at: datetime
    finished_at: datetime | None = None
    delegations: list[DelegationReport] = field(default_factory=list)
    settled: int = 0
    error: str | None = None

    @property
    def submitted(self) -> int:
        return sum(
            1 for d in self.delegations for o in d.outcomes if o.status == OutcomeStatus.SUBMITTED
        )

    @property
    def failed_delegations(self) -> int:
        return sum(1 for d in self.delegations if d.error is not None)

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "delegations": [d.to_dict() for d in self.delegations],
            "submitted": self.submitted,
            "failed_delegations": self.failed_delegations,
            "settled": self.settled,
            "error": self.error,
        }


class WalletMonitor:
    """Runs evaluation cycles for every active delegation of the agent.

    Parameters
    ----------
    config:
        The ``monitor`` section of the configuration.
    registry, indexer, rules, executor:
        Injected collaborators; tests substitute fakes for the indexer and
        the executor's authority provider.
    agent_address:
        The delegate address whose delegations this monitor serves.
    """

    def __init__(
        self,
        config: MonitorConfig,
        registry: DelegationRegistry,
        indexer: IndexerClient,
        rules: RuleEngine,
        executor: TransactionExecutor,
        agent_address: str,
    ) -> None:
        if config.max_concurrency < 1:
            raise ValueError("monitor.max_concurrency must be at least 1")
        self.config = config
        self.registry = registry
        self.indexer = indexer
        self.rules = rules
        self.executor = executor
        self.agent_address = agent_address.lower()

        self._semaphore = asyncio.Semaphore(config.max_concurrency)
        self._cycle_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._ticker: asyncio.Task | None = None
        self._cycle_task: asyncio.Task | None = None

        self.cycles_run = 0
        self.ticks_skipped = 0
        self.last_report: CycleReport | None = None

    @property
    def running(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the ticker on the running event loop."""
        if self.running:
            raise RuntimeError("Monitor already running")
        self._stop_event.clear()
        self._ticker = asyncio.create_task(self._tick_loop(), name="wallet-monitor")
        logger.info(
            f"Monitor started for {self.agent_address} "
            f"(every {self.config.interval_seconds}s, {self.config.max_concurrency} workers)"
        )

    async def stop(self, grace_seconds: float | None = None) -> None:
        """Stop ticking and let the in-flight cycle finish within *grace_seconds*."""
        grace = self.config.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        self._stop_event.set()
        if self._ticker is not None:
            self._ticker.cancel()
            await asyncio.gather(self._ticker, return_exceptions=True)
            self._ticker = None

        cycle = self._cycle_task
        if cycle is not None and not cycle.done():
            logger.info(f"Waiting up to {grace}s for the running cycle to finish")
            done, _ = await asyncio.wait({cycle}, timeout=grace)
            if not done:
                logger.warning("Cycle did not finish within the grace period, cancelling")
                cycle.cancel()
                await asyncio.gather(cycle, return_exceptions=True)
        self._cycle_task = None
        logger.info("Monitor stopped")

    async def _tick_loop(self) -> None:
        if not self.config.run_on_start:
            if await self._wait_interval():
                return
        while not self._stop_event.is_set():
            self._tick()
            if await self._wait_interval():
                return

    async def _wait_interval(self) -> bool:
        """Sleep one interval; return True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.config.interval_seconds)
        except asyncio.TimeoutError:
            return False
        return True

    def _tick(self) -> None:
        if self._cycle_task is not None and not self._cycle_task.done():
            self.ticks_skipped += 1
            logger.warning(f"Previous cycle still running, skipping tick ({self.ticks_skipped} skipped)")
            return
        self._cycle_task = asyncio.create_task(self.run_cycle(), name="wallet-monitor-cycle")

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleReport | None:
        """Run one evaluation cycle now.

        Returns ``None`` without doing anything if a cycle is already
        running.
        """
        if self._cycle_lock.locked():
            self.ticks_skipped += 1
            logger.warning("Cycle already running, not starting another")
            return None

        async with self._cycle_lock:
            report = CycleReport(started_at=utcnow())
            try:
                await self._run_delegations(report)
                report.settled = await self._settle_inactive()
            except Exception as exc:
                report.error = str(exc) or type(exc).__name__
                logger.error(f"Cycle aborted: {report.error}", exc_info=True)

            report.finished_at = utcnow()
            self.cycles_run += 1
            self.last_report = report
            logger.info(
                f"Cycle finished: {report.submitted} submitted, "
                f"{report.failed_delegations} delegations failed, {report.settled} settled"
            )
            return report

    async def _run_delegations(self, report: CycleReport) -> None:
        delegations = await self.registry.list_active(self.agent_address)
        logger.info(f"Cycle started: {len(delegations)} active delegations")

        results = await asyncio.gather(
            *(self._run_delegation(d) for d in delegations),
            return_exceptions=True,
        )
        for delegation, result in zip(delegations, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                # Failures outside the worker's own handler.
                report.delegations.append(
                    DelegationReport(delegation.id, delegation.delegator, error=repr(result))
                )
            else:
                report.delegations.append(result)

    async def _run_delegation(self, delegation: DelegationRecord) -> DelegationReport:
        report = DelegationReport(delegation.id, delegation.delegator)
        async with self._semaphore:
            try:
                approvals = await self.indexer.get_approvals(delegation.delegator)
                report.approvals = len(approvals)
                actions = self.rules.evaluate_all(approvals, utcnow())
                report.reconciled = len(await self.executor.reconcile(delegation, approvals, actions))
                if actions:
                    logger.info(f"Delegation {delegation.id}: {len(actions)} proposed actions")
                report.outcomes = await self.executor.execute(actions, delegation)
            except Exception as exc:
                report.error = str(exc) or type(exc).__name__
                logger.error(
                    f"Delegation {delegation.id} ({delegation.delegator}) failed this cycle: {exc}",
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
        return report

    async def _settle_inactive(self) -> int:
        settled = 0
        for delegation in await self.registry.list_settling(self.agent_address):
            try:
                settled += len(await self.executor.settle(delegation))
            except Exception as exc:
                logger.error(f"Settling delegation {delegation.id} failed: {exc}")
        return settled

    def status(self) -> dict:
        return {
            "agent": self.agent_address,
            "running": self.running,
            "cycle_in_progress": self._cycle_lock.locked(),
            "interval_seconds": self.config.interval_seconds,
            "max_concurrency": self.config.max_concurrency,
            "cycles_run": self.cycles_run,
            "ticks_skipped": self.ticks_skipped,
            "last_report": self.last_report.to_dict() if self.last_report else None,
        }
