from __future__ import annotations

from typing import Any

from actionflow_mcp.db.database import Database
from actionflow_mcp.services.executor import Executor
from actionflow_mcp.services.scheduler import SchedulerLoop


async def collect_engine_stats(
    db: Database,
    executor: Executor,
    scheduler: SchedulerLoop | None = None,
    owner: str | None = None,
) -> dict[str, Any]:
    """Counts by status, engine liveness, and execution counters.

    ``executor`` counters cover this process since start; ``attempts`` are
    the durable totals across every process sharing the store.
    """
    by_status = await db.count_by_status(owner)
    attempts = await db.attempt_totals()
    return {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "attempts": {
            "total": sum(attempts.values()),
            **attempts,
        },
        "executor": executor.stats.to_dict(),
        "scheduler": scheduler.status() if scheduler else {"running": False},
        "handlers": executor.registry.kinds(),
    }
