# calsync/services/orchestrator.py
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import structlog

from calsync.errors import IntegrationError
from calsync.infrastructure.accounts_repo import AccountsRepository
from calsync.models.account import Account, PROVIDER_MTM, STATUS_CONNECTED
from calsync.services.runtime import SyncRuntime
from calsync.services.sync_service import SyncOutcome, SyncService

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SyncTask:
    uid: str
    provider: str


@dataclass
class SyncPlan:
    tasks: List[SyncTask]
    deferred: int = 0
    in_backoff: int = 0


@dataclass
class BatchReport:
    planned: int = 0
    succeeded: int = 0
    failed: int = 0
    timed_out: int = 0
    deferred: int = 0
    in_backoff: int = 0
    errors: Dict[str, str] = field(default_factory=dict)


def plan_sync_batch(accounts: Iterable[Account], now: datetime, batch_size: int = 25) -> SyncPlan:
    """
    Pure planning step: which accounts this run syncs.
    Never-synced accounts go first, then the stalest; whatever does not fit
    the batch is left for the next run (no queue is carried over).
    """
    eligible = []
    in_backoff = 0
    for account in accounts:
        if account.provider != PROVIDER_MTM or account.connection_status != STATUS_CONNECTED:
            continue
        if account.sync_state.in_backoff(now):
            in_backoff += 1
            continue
        eligible.append(account)

    eligible.sort(key=lambda a: (a.last_sync_at is not None, a.last_sync_at or datetime.min, a.uid))
    batch = eligible[: max(0, batch_size)]
    return SyncPlan(
        tasks=[SyncTask(uid=a.uid, provider=a.provider) for a in batch],
        deferred=len(eligible) - len(batch),
        in_backoff=in_backoff,
    )


class SyncOrchestrator:
    def __init__(self, runtime: SyncRuntime, service: Optional[SyncService] = None):
        self.runtime = runtime
        self.service = service or SyncService(runtime)

    async def run_once(self, now: Optional[datetime] = None) -> BatchReport:
        now = now or datetime.utcnow()
        async with self.runtime.session_factory() as session:
            accounts = await AccountsRepository(session).list_connected(PROVIDER_MTM)
        plan = plan_sync_batch(accounts, now, self.runtime.batch_size)
        report = BatchReport(planned=len(plan.tasks), deferred=plan.deferred, in_backoff=plan.in_backoff)
        if not plan.tasks:
            logger.info("sync_batch_empty", deferred=plan.deferred, in_backoff=plan.in_backoff)
            return report

        semaphore = asyncio.Semaphore(max(1, self.runtime.concurrency))

        async def run(task: SyncTask) -> SyncOutcome:
            async with semaphore:
                return await asyncio.wait_for(
                    self.service.sync_account(task.uid, task.provider),
                    timeout=self.runtime.cycle_budget_seconds,
                )

        results = await asyncio.gather(*(run(t) for t in plan.tasks), return_exceptions=True)
        for task, outcome in zip(plan.tasks, results):
            if isinstance(outcome, SyncOutcome):
                report.succeeded += 1
            elif isinstance(outcome, asyncio.TimeoutError):
                # abandoned for this run; every step is idempotent so the next run redoes it
                report.timed_out += 1
                report.errors[task.uid] = "timeout"
                logger.warning("sync_account_timed_out", uid=task.uid, budget=self.runtime.cycle_budget_seconds)
            elif isinstance(outcome, IntegrationError):
                report.failed += 1
                report.errors[task.uid] = outcome.code
            else:
                report.failed += 1
                report.errors[task.uid] = "internal_error"
                logger.error("sync_account_crashed", uid=task.uid, error=repr(outcome))

        logger.info(
            "sync_batch_finished",
            planned=report.planned,
            succeeded=report.succeeded,
            failed=report.failed,
            timed_out=report.timed_out,
            deferred=report.deferred,
            in_backoff=report.in_backoff,
        )
        return report
