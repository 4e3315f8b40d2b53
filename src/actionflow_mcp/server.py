from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import AsyncIterator

from mcp.server.fastmcp import FastMCP

from actionflow_mcp.db.database import Database
from actionflow_mcp.handlers import HandlerRegistry, build_default_registry
from actionflow_mcp.services.classifier import LLMIntentClassifier
from actionflow_mcp.services.executor import Executor
from actionflow_mcp.services.llm import create_llm_client
from actionflow_mcp.services.notifier import NotificationDispatcher
from actionflow_mcp.services.scheduler import SchedulerLoop
from actionflow_mcp.services.stats import collect_engine_stats
from actionflow_mcp.services.work_queue import WorkQueue
from actionflow_mcp.tools import engine as engine_tools
from actionflow_mcp.tools import work_items as work_item_tools
from actionflow_mcp.utils.config import Config, get_config
from actionflow_mcp.utils.logger import setup_logging

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    """Every long-lived service of one engine process."""

    db: Database
    dispatcher: NotificationDispatcher
    registry: HandlerRegistry
    work_queue: WorkQueue
    executor: Executor
    scheduler: SchedulerLoop


async def build_engine(config: Config) -> Engine:
    """Open the store and wire the services together; the scheduler is not started."""
    db = Database(config.db_path)
    await db.initialize()

    dispatcher = NotificationDispatcher()
    llm_client = create_llm_client(config.anthropic_api_key)
    registry = build_default_registry(config, dispatcher, llm_client)
    classifier = LLMIntentClassifier(llm_client, config.classifier_model)

    work_queue = WorkQueue(
        db,
        classifier=classifier,
        notifier=dispatcher,
        default_max_retries=config.default_max_retries,
    )
    executor = Executor(
        db,
        registry,
        dispatcher,
        handler_timeout=config.handler_timeout_seconds,
        backoff_unit=timedelta(seconds=config.backoff_unit_seconds),
        max_concurrency=config.max_concurrency,
        batch_size=config.batch_size,
    )
    scheduler = SchedulerLoop(
        db,
        executor,
        discovery_interval=config.discovery_interval,
        maintenance_interval=config.maintenance_interval,
        stall_timeout=timedelta(seconds=config.stall_timeout_seconds),
        retention=timedelta(days=config.retention_days),
    )
    return Engine(db, dispatcher, registry, work_queue, executor, scheduler)


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[None]:
    """Startup / shutdown lifecycle for ActionFlow."""
    config = get_config()

    engine = await build_engine(config)
    await engine.scheduler.start()

    # --- Register MCP tools ---
    work_item_tools.register(server, engine.work_queue, config.default_max_retries)
    engine_tools.register(server, engine.db, engine.executor, engine.scheduler)

    # --- Register MCP resource ---
    @server.resource("actionflow://stats")
    async def get_stats() -> str:
        stats = await collect_engine_stats(engine.db, engine.executor, engine.scheduler)
        by_status = stats["by_status"]
        return (
            "ActionFlow Status:\n"
            f"- Scheduler Running: {stats['scheduler']['running']}\n"
            f"- Last Discovery Tick: {stats['scheduler'].get('last_discovery_at')}\n"
            f"- Pending: {by_status['pending']}, Running: {by_status['running']}\n"
            f"- Completed: {by_status['completed']}, Failed: {by_status['failed']}, "
            f"Cancelled: {by_status['cancelled']}\n"
            f"- Executed (this process): {stats['executor']['executed']}, "
            f"Failed: {stats['executor']['failed']}\n"
        )

    logger.info("ActionFlow MCP Server ready (handlers: %s)", ", ".join(engine.registry.kinds()))

    try:
        yield
    finally:
        await engine.scheduler.stop()
        await engine.db.close()
        logger.info("ActionFlow MCP Server stopped")


def create_server() -> FastMCP:
    """Build and return the configured FastMCP server."""
    config = get_config()
    setup_logging(config.log_level)

    server = FastMCP("ActionFlow", lifespan=lifespan)
    return server


# Module-level instance used by the CLI and ``python -m``
mcp = create_server()

if __name__ == "__main__":
    mcp.run()
