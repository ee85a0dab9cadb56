"""Command line entry point for the agent swarm."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

from agent import AgentRuntime
from browser import BrowserSession
from config import SwarmConfig, load_config
from decision import DecisionClient
from exceptions import ConfigurationError, SwarmError, TestNotFoundError
from hub import BroadcastHub
from job_store import JobStoreClient, SQLiteJobStore
from job_types import AgentIdentity
from live_stream import LiveStreamClient
from monitor import HealthMonitor, format_stats
from spawner import (
    EXIT_CONFIG_ERROR,
    EXIT_FAILURE,
    EXIT_INTERRUPTED,
    EXIT_OK,
    Supervisor,
    default_agent_command,
)
from storage import LocalScreenshotStorage
from task_loader import discover_tasks, submit_tests

LOG_FORMAT = "[%(levelname)s] %(name)s: %(message)s"

logger = logging.getLogger("swarm")


def setup_logging(level: str, log_file: Optional[Path] = None) -> None:
    """Log to stderr, and to a rotating file when one is configured."""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=3, encoding="utf-8"))
    logging.basicConfig(level=getattr(logging, level), format=LOG_FORMAT, handlers=handlers, force=True)


def _install_signal_handlers(callback) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on Windows event loops; Ctrl+C still raises KeyboardInterrupt there.
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, callback)


# ─────────────────────────────────────────────────────────────────────────────
# Sub-commands
# ─────────────────────────────────────────────────────────────────────────────


async def run_agent(config: SwarmConfig, args: argparse.Namespace) -> int:
    if args.require_model:
        config.require_model_credentials()

    agent_logger = logging.getLogger("swarm.agent")
    store = JobStoreClient(SQLiteJobStore.from_config(config.store))
    identity = AgentIdentity.generate(browser_type=config.browser.browser)

    decision = None
    if config.model.api_key:
        decision = DecisionClient(config.model)
    else:
        agent_logger.warning("No model API key configured; AI-mode tests will fail on this agent")

    live_stream = None
    if config.live_stream.enabled:
        live_stream = LiveStreamClient.from_config(identity.id, identity.name, config.live_stream)

    runtime = AgentRuntime(
        config=config,
        store=store,
        browser=BrowserSession.from_config(config.browser),
        storage=LocalScreenshotStorage(config.storage.root, config.storage.bucket),
        decision=decision,
        live_stream=live_stream,
        identity=identity,
        logger=agent_logger,
    )
    _install_signal_handlers(runtime.stop)
    try:
        await runtime.start()
        await runtime.run(max_tests=args.max_tests)
    finally:
        await runtime.close()
    return EXIT_OK


async def run_hub(config: SwarmConfig, args: argparse.Namespace) -> int:
    hub = BroadcastHub(send_timeout=config.live_stream.send_timeout)
    await hub.serve(config.live_stream.host, config.live_stream.port)
    return EXIT_OK


def _build_monitor(config: SwarmConfig) -> HealthMonitor:
    return HealthMonitor(
        JobStoreClient(SQLiteJobStore.from_config(config.store)),
        interval=config.monitor.interval,
        stale_after=config.store.stale_after_seconds,
    )


async def run_monitor(config: SwarmConfig, args: argparse.Namespace) -> int:
    monitor = _build_monitor(config)
    _install_signal_handlers(monitor.stop)
    await monitor.run()
    return EXIT_OK


async def run_spawn(config: SwarmConfig, args: argparse.Namespace) -> int:
    passthrough: List[str] = []
    if args.config:
        passthrough += ["--config", str(args.config)]
    if args.db:
        passthrough += ["--db", str(args.db)]
    supervisor = Supervisor.from_config(config.supervisor, command=default_agent_command(passthrough))
    monitor = _build_monitor(config) if args.with_monitor else None
    pending_stop: List[asyncio.Task] = []

    def _shutdown() -> None:
        logger.info("Received shutdown signal")
        if monitor is not None:
            monitor.stop()
        if not pending_stop:
            pending_stop.append(asyncio.create_task(supervisor.stop()))

    _install_signal_handlers(_shutdown)
    monitor_task = asyncio.create_task(monitor.run()) if monitor is not None else None
    await supervisor.run()
    if pending_stop:
        await pending_stop[0]
    if monitor_task is not None:
        monitor.stop()
        await monitor_task
    return EXIT_OK


async def run_submit(config: SwarmConfig, args: argparse.Namespace) -> int:
    cases = []
    for location in args.paths:
        cases.extend(
            discover_tasks(
                Path(location),
                include_tags=set(args.tag) if args.tag else None,
                exclude_tags=set(args.exclude_tag) if args.exclude_tag else None,
            )
        )
    if not cases:
        logger.warning("No test cases found matching filters")
        return EXIT_OK

    store = SQLiteJobStore.from_config(config.store)
    ids = await asyncio.to_thread(submit_tests, store, cases)
    for case, test_id in zip(cases, ids):
        print(f"  {test_id}  {case.name}  ({case.mode.value})")
    print(f"Submitted {len(ids)} test case(s)")
    return EXIT_OK


def _describe_test(store: SQLiteJobStore, test_id: str) -> Dict[str, Any]:
    case = store.get_test(test_id)
    return {
        "case": case,
        "results": store.list_results(test_id),
    }


async def run_status(config: SwarmConfig, args: argparse.Namespace) -> int:
    store = SQLiteJobStore.from_config(config.store)

    if args.test:
        try:
            info = await asyncio.to_thread(_describe_test, store, args.test)
        except TestNotFoundError as exc:
            logger.error(str(exc))
            return EXIT_FAILURE
        case = info["case"]
        print(f"{case.name} [{case.status.value}] retries {case.retry_count}/{case.max_retries}")
        for result in info["results"]:
            print(f"  attempt {result.id} by {result.agent_id}: {result.status.value}"
                  + (f" ({result.error_message})" if result.error_message else ""))
            for step in result.steps:
                line = f"    {step.step_number}. {step.action_type} {step.status.value}"
                if step.error_message:
                    line += f": {step.error_message}"
                print(line)
        return EXIT_OK

    stats = await asyncio.to_thread(store.stats)
    print(format_stats(stats))
    for agent in await asyncio.to_thread(store.list_agents):
        heartbeat = agent.last_heartbeat.isoformat() if agent.last_heartbeat else "-"
        print(f"  {agent.name:<16} {agent.status.value:<9} runs={agent.total_tests_run} "
              f"ok={agent.successful_tests} failed={agent.failed_tests} heartbeat={heartbeat}")
    return EXIT_OK


COMMANDS = {
    "agent": run_agent,
    "hub": run_hub,
    "monitor": run_monitor,
    "spawn": run_spawn,
    "submit": run_submit,
    "status": run_status,
}


def _build_arg_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description="Swarm of browser agents pulling tests from a shared queue.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s submit tasks/                # Queue every test definition in tasks/
  %(prog)s hub --port 3001              # Start the broadcast hub
  %(prog)s spawn --agents 5 --with-monitor
  %(prog)s status --test <id>           # Show attempts and steps of one test
        """,
    )
    parser.add_argument("--config", type=Path, help="Path to config file (default: swarm.yaml if exists)")
    parser.add_argument("--db", help="SQLite job store path")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--log-file", type=Path, help="Also log to this rotating file")

    sub = parser.add_subparsers(dest="command", required=True)

    agent = sub.add_parser("agent", help="Run one agent process")
    agent.add_argument("--browser", choices=["chromium", "firefox", "webkit"])
    agent.add_argument("--headful", action="store_true", default=None, help="Show the browser window")
    agent.add_argument("--live-stream", action="store_true", default=None, help="Stream frames to the hub")
    agent.add_argument("--hub-url", help="Producer endpoint of the hub")
    agent.add_argument("--model", help="Vision model name")
    agent.add_argument("--max-tests", type=int, help="Exit after executing this many tests")
    agent.add_argument(
        "--require-model",
        action="store_true",
        help="Refuse to start without model credentials",
    )

    hub = sub.add_parser("hub", help="Run the broadcast hub")
    hub.add_argument("--host")
    hub.add_argument("--port", type=int)

    sub.add_parser("monitor", help="Run the health monitor")

    spawn = sub.add_parser("spawn", help="Supervise N agent processes")
    spawn.add_argument("--agents", type=int, metavar="N")
    spawn.add_argument("--with-monitor", action="store_true", help="Run the health monitor in-process")

    submit = sub.add_parser("submit", help="Queue test definitions from YAML/JSON files")
    submit.add_argument("paths", nargs="+", help="Task files or directories")
    submit.add_argument("--tag", action="append", help="Only submit tests with this tag")
    submit.add_argument("--exclude-tag", action="append", help="Skip tests with this tag")

    status = sub.add_parser("status", help="Print queue and agent statistics")
    status.add_argument("--test", help="Show one test case with its attempts and steps")

    return parser


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    keys = ["db", "log_level", "log_file", "browser", "headful", "live_stream", "hub_url", "model", "host", "port", "agents"]
    return {k: getattr(args, k) for k in keys if getattr(args, k, None) is not None}


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    parser = _build_arg_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

    try:
        config = load_config(args.config, _cli_overrides(args), required=args.config is not None)
        setup_logging(config.log_level, config.log_file)
        exit_code = asyncio.run(COMMANDS[args.command](config, args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        exit_code = EXIT_INTERRUPTED
    except ConfigurationError as exc:
        logger.error(f"Configuration error: {exc}")
        exit_code = EXIT_CONFIG_ERROR
    except SwarmError as exc:
        logger.error(f"Error: {exc}")
        exit_code = EXIT_FAILURE
    except Exception as exc:
        logger.exception(f"Unexpected error: {exc}")
        exit_code = EXIT_FAILURE

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
