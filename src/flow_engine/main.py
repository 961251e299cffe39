"""Flow engine daemon: recovers crashed flows and auto-resumes paused ones."""

import argparse
import importlib
import logging
import signal
import sys
import threading
from dataclasses import dataclass

import redis

from flow_engine.services.auto_resume import FlowAutoResumeService
from flow_engine.services.catalog import FlowCatalog
from flow_engine.services.engine_service import FlowEngineService
from flow_engine.services.flow_executor import FlowExecutor
from flow_engine.services.flow_store import RedisFlowStore
from flow_engine.services.log_service import configure_logging
from flow_engine.services.notifier import RedisStatusNotifier
from flow_engine.services.recovery import FlowRecoveryService
from flow_engine.settings import EngineSettings

logger = logging.getLogger("flow_engine")


@dataclass
class FlowEngine:
    """The wired-up services of one engine process."""

    settings: EngineSettings
    catalog: FlowCatalog
    executor: FlowExecutor
    service: FlowEngineService
    auto_resume: FlowAutoResumeService

    def shutdown(self) -> None:
        self.auto_resume.stop()
        self.executor.shutdown(wait=True)


def build_engine(
    settings: EngineSettings,
    redis_client: redis.Redis,
    catalog: FlowCatalog | None = None,
) -> FlowEngine:
    """Wire store, executor and services together."""
    catalog = catalog or FlowCatalog()
    store = RedisFlowStore(redis_client)
    notifier = RedisStatusNotifier(redis_client, settings.status_channel)
    executor = FlowExecutor(store, catalog, notifier=notifier, max_workers=settings.max_workers)
    background = not settings.inline_execution
    recovery = FlowRecoveryService(store, executor, background=background)
    service = FlowEngineService(executor, recovery, inline_execution=settings.inline_execution)
    auto_resume = FlowAutoResumeService(
        store,
        executor,
        catalog.conditions,
        interval=settings.auto_resume_interval,
        background=background,
    )
    return FlowEngine(settings, catalog, executor, service, auto_resume)


def load_flow_modules(catalog: FlowCatalog, entries: list[str]) -> None:
    """Import ``module:function`` entries and let each register its flows."""
    for entry in entries:
        module_name, _, func_name = entry.partition(":")
        module = importlib.import_module(module_name)
        register = getattr(module, func_name or "register_flows")
        register(catalog)
        logger.info(f"Loaded flow definitions from {entry}")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Flow engine daemon")
    parser.add_argument("--redis-url", help="Redis URL (env: REDIS_URL)")
    parser.add_argument(
        "--auto-resume-interval",
        type=float,
        help="Seconds between auto-resume passes (env: FLOW_AUTO_RESUME_INTERVAL)",
    )
    parser.add_argument(
        "--max-workers", type=int, help="Concurrent flows (env: FLOW_MAX_WORKERS)"
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        help="Log level (env: LOG_LEVEL)",
    )
    parser.add_argument("--log-dir", help="Log directory (env: LOG_DIR)")
    parser.add_argument(
        "--flows",
        action="append",
        default=[],
        metavar="MODULE[:FUNCTION]",
        help="Module registering flow definitions; may be repeated",
    )
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> EngineSettings:
    settings = EngineSettings.from_env()
    overrides = {
        "redis_url": args.redis_url,
        "auto_resume_interval": args.auto_resume_interval,
        "max_workers": args.max_workers,
        "log_level": args.log_level,
        "log_dir": args.log_dir,
    }
    return settings.model_copy(update={k: v for k, v in overrides.items() if v is not None})


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = settings_from_args(args)
    configure_logging(log_dir=settings.log_dir, level=settings.log_level)

    logger.info(f"Connecting to Redis at {settings.redis_url}")
    redis_client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
    try:
        redis_client.ping()
        logger.info("Redis connection established")
    except redis.ConnectionError as e:
        logger.error(f"Failed to connect to Redis: {e}")
        return 1

    catalog = FlowCatalog()
    try:
        load_flow_modules(catalog, args.flows)
    except (ImportError, AttributeError) as e:
        logger.error(f"Failed to load flow definitions: {e}")
        return 1

    engine = build_engine(settings, redis_client, catalog)
    stopped = threading.Event()

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        stopped.set()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    result = engine.service.recover_crashed_flows()
    logger.info(
        f"Startup recovery: {result.recovered_count} recovered, {result.failed_count} failed"
    )
    engine.auto_resume.start()

    logger.info("Flow engine started")
    stopped.wait()
    engine.shutdown()
    logger.info("Flow engine stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
