"""Command-line interface for the deployment engine."""

from __future__ import annotations

import argparse
import json
import signal
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .config import AppConfig, load_config
from .deployment import DeploymentService
from .errors import DeployEngineError
from .scheduler import DeploymentScheduler
from .store import JsonFileStore
from .utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class CLIContext:
    """Context captured from CLI arguments."""

    config: AppConfig
    store: JsonFileStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deploy-engine",
        description="Run stored deployments: clone, build and fan out scripts to target hosts.",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a JSON config file overriding defaults.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Execute one deployment now")
    run_parser.add_argument("--deployment", required=True, help="Deployment id")
    run_parser.add_argument("--store", required=True, help="JSON store file")
    run_parser.add_argument(
        "--json", action="store_true", dest="as_json",
        help="Print the result as JSON instead of the log text"
    )

    # scheduler 子命令 - 轮询定时部署
    scheduler_parser = subparsers.add_parser(
        "scheduler", help="Start approved deployments whose scheduled time has passed"
    )
    scheduler_parser.add_argument("--store", required=True, help="JSON store file")
    scheduler_parser.add_argument(
        "--once", action="store_true",
        help="Run a single check, wait for started deployments, then exit"
    )
    scheduler_parser.add_argument(
        "--interval", type=float, default=None,
        help="Poll interval in seconds (minimum 10)"
    )

    jenkins_parser = subparsers.add_parser(
        "jenkins-status", help="Show the Jenkins build behind a deployment"
    )
    jenkins_parser.add_argument("--deployment", required=True, help="Deployment id")
    jenkins_parser.add_argument("--store", required=True, help="JSON store file")
    jenkins_parser.add_argument(
        "--log", action="store_true",
        help="Also print the build console output"
    )

    return parser


def _build_context(args: argparse.Namespace) -> CLIContext:
    config = load_config(args.config)
    store = JsonFileStore(Path(args.store))
    return CLIContext(config=config, store=store)


def handle_run_command(args: argparse.Namespace, context: CLIContext) -> int:
    service = DeploymentService.from_store(context.store, context.config)
    result = service.execute(args.deployment)

    if args.as_json:
        print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    else:
        print(result.logs)
        print(f"\n{'='*60}")
        status_emoji = "✅" if result.success else "❌"
        print(f"{status_emoji} {result.state.value} in {result.duration:.1f}s")
        for item in result.host_results:
            icon = "✓" if item.success else "✗"
            print(f"    {icon} {item.host_id}: {item.message}")
        if result.error:
            print(f"    ⚠️ {result.error}")
    return 0 if result.success else 1


def handle_scheduler_command(args: argparse.Namespace, context: CLIContext) -> int:
    service = DeploymentService.from_store(context.store, context.config)
    scheduler = DeploymentScheduler(
        context.store,
        service.execute,
        interval=args.interval or context.config.scheduler.interval,
        max_workers=context.config.scheduler.max_workers,
    )

    if args.once:
        claimed = scheduler.check_now()
        print(f"⏰ Started {len(claimed)} scheduled deployment(s)")
        for deployment_id in claimed:
            print(f"    • {deployment_id}")
        scheduler.wait_idle()
        scheduler.stop()
        return 0

    stopped = threading.Event()

    def _handle_signal(signum, frame):
        logger.info("Received signal %s, stopping scheduler", signum)
        stopped.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    scheduler.start()
    print(f"⏰ Scheduler running every {scheduler.interval:.0f}s, press Ctrl+C to stop")
    stopped.wait()
    scheduler.stop()
    return 0


def handle_jenkins_status_command(args: argparse.Namespace, context: CLIContext) -> int:
    service = DeploymentService.from_store(context.store, context.config)
    status = service.jenkins.poll(args.deployment)

    status_emoji = {"success": "✅", "failed": "❌", "running": "🔄", "queued": "⏳"}.get(status.state, "❓")
    print(f"{status_emoji} {status.job_name}: {status.state}")
    print(f"    Queue item: {status.queue_id}")
    if status.build_number is not None:
        print(f"    Build:      #{status.build_number}")
    if status.result:
        print(f"    Result:     {status.result}")
    if status.duration is not None:
        print(f"    Duration:   {status.duration:.1f}s")
    if status.url:
        print(f"    URL:        {status.url}")

    if args.log:
        console = service.jenkins.fetch_log(args.deployment)
        print()
        print(console or "(no console output yet)")
    return 0 if status.state != "failed" else 1


def dispatch_command(args: argparse.Namespace) -> int:
    context = _build_context(args)
    try:
        if args.command == "run":
            return handle_run_command(args, context)
        if args.command == "scheduler":
            return handle_scheduler_command(args, context)
        if args.command == "jenkins-status":
            return handle_jenkins_status_command(args, context)
    except DeployEngineError as exc:
        print(f"❌ {exc}")
        return 1
    raise ValueError(f"Unknown command: {args.command}")


def run_cli(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return dispatch_command(args)
