from __future__ import annotations

from mcp.server.fastmcp import FastMCP

from actionflow_mcp.db.database import Database
from actionflow_mcp.errors import ActionFlowError
from actionflow_mcp.services.executor import Executor
from actionflow_mcp.services.scheduler import SchedulerLoop
from actionflow_mcp.services.stats import collect_engine_stats


def register(
    mcp: FastMCP,
    db: Database,
    executor: Executor,
    scheduler: SchedulerLoop,
) -> None:
    """Register engine control and statistics MCP tools."""

    @mcp.tool()
    async def execute_work_item_now(item_id: str) -> dict:
        """Run a pending work item immediately instead of waiting for its time.

        The item is still claimed atomically, so it cannot run twice, and
        items that need confirmation must be confirmed first.

        Args:
            item_id: Work item id
        """
        try:
            outcome = await executor.execute_now(item_id)
        except ActionFlowError as exc:
            return {"success": False, "error": str(exc), "error_type": type(exc).__name__}
        return {"success": True, "outcome": outcome.to_dict()}

    @mcp.tool()
    async def get_engine_stats(owner: str | None = None) -> dict:
        """Work item counts by status, scheduler liveness, and execution counters.

        Args:
            owner: Restrict status counts to one principal
        """
        return await collect_engine_stats(db, executor, scheduler, owner)

    @mcp.tool()
    async def run_maintenance() -> dict:
        """Run the maintenance sweep now: reconcile stalled items and apply retention."""
        report = await scheduler.run_maintenance_once()
        return report.to_dict()
