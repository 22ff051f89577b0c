"""Command line entry point: ``python -m publisher <command>``."""

import argparse
import json
import signal
import sys
from datetime import datetime
from typing import Any

from publisher.core.config import settings
from publisher.core.db import create_tables
from publisher.core.errors import PublisherError
from publisher.core.logging import configure_logging, get_logger
from publisher.monitoring.health import HealthMonitor
from publisher.monitoring.reporter import MetricsReporter
from publisher.worker.service import PublisherService

logger = get_logger(__name__).bind(module="cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="publisher", description="Knowledge asset publishing service"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    worker = sub.add_parser("worker", help="Run publish workers")
    worker.add_argument(
        "--workers",
        type=int,
        default=None,
        help=f"Worker threads (default: {settings.PUBLISHER_WORKER_COUNT})",
    )
    worker.add_argument(
        "--no-maintenance",
        action="store_true",
        help="Do not run the maintenance loop in this process",
    )

    maintain = sub.add_parser("maintain", help="Run the maintenance sweeps")
    maintain.add_argument("--once", action="store_true", help="Run a single pass and exit")

    recover = sub.add_parser("recover-stuck", help="Requeue assets stuck in publishing")
    recover.add_argument(
        "--older-than",
        type=float,
        default=settings.STUCK_PUBLISHING_SECONDS,
        help="Seconds since the last update (default: %(default)s)",
    )

    retry = sub.add_parser("retry-failed", help="Requeue failed assets")
    retry.add_argument("--source", default=None, help="Only assets from this source")
    retry.add_argument(
        "--max-attempts", type=int, default=None, help="New attempt budget"
    )

    sub.add_parser("stats", help="Print pipeline statistics as JSON")
    sub.add_parser("health", help="Print health status; exit 1 when unhealthy")

    metrics = sub.add_parser("metrics", help="Print publishing metrics as JSON")
    views = metrics.add_subparsers(dest="view", required=True)
    publishing = views.add_parser("publishing", help="Status breakdown by creation window")
    publishing.add_argument(
        "--from",
        dest="created_from",
        type=datetime.fromisoformat,
        default=None,
        help="ISO timestamp; only assets created at or after it",
    )
    publishing.add_argument(
        "--to",
        dest="created_to",
        type=datetime.fromisoformat,
        default=None,
        help="ISO timestamp; only assets created at or before it",
    )
    hourly = views.add_parser("hourly", help="Submissions per hour")
    hourly.add_argument("--hours", type=int, default=24, help="Window (default: %(default)s)")
    views.add_parser("priority", help="Queue-to-publish performance per priority")

    sub.add_parser("pause", help="Stop workers from taking new dispatch entries")
    sub.add_parser("resume", help="Let workers take dispatch entries again")

    serve = sub.add_parser("serve-ops", help="Serve the ops API")
    serve.add_argument("--host", default=settings.OPS_HOST)
    serve.add_argument("--port", type=int, default=settings.OPS_PORT)

    return parser


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def run_worker(service: PublisherService, args: argparse.Namespace) -> int:
    service.configure_wallets()
    service.start(worker_count=args.workers, maintenance=not args.no_maintenance)

    def shutdown(signum: int, frame: Any) -> None:
        logger.info("Shutdown requested", signal=signum)
        service.stop()

    signal.signal(signal.SIGTERM, shutdown)
    signal.signal(signal.SIGINT, shutdown)
    service.wait()
    return 0


def run_maintain(service: PublisherService, args: argparse.Namespace) -> int:
    if args.once:
        _print_json(service.maintenance.run_once().model_dump())
        return 0

    stop = service.stop_event
    signal.signal(signal.SIGTERM, lambda signum, frame: stop.set())
    signal.signal(signal.SIGINT, lambda signum, frame: stop.set())
    service.maintenance.run(stop)
    return 0


def run_recover_stuck(service: PublisherService, args: argparse.Namespace) -> int:
    recovered = service.registry.recover_stuck(args.older_than)
    _print_json({"recovered": recovered})
    return 0


def run_retry_failed(service: PublisherService, args: argparse.Namespace) -> int:
    count = service.registry.retry_failed(args.source, args.max_attempts)
    _print_json({"retried": count})
    return 0


def _reporter(service: PublisherService) -> MetricsReporter:
    return MetricsReporter(
        service.registry,
        service.wallet_pool,
        service.dispatch,
        service.worker_registry,
        worker_ttl=service.config.WORKER_HEARTBEAT_TTL,
    )


def run_stats(service: PublisherService, args: argparse.Namespace) -> int:
    _print_json(_reporter(service).snapshot().model_dump(mode="json"))
    return 0


def run_metrics(service: PublisherService, args: argparse.Namespace) -> int:
    reporter = _reporter(service)
    if args.view == "publishing":
        data: Any = reporter.publishing_metrics(args.created_from, args.created_to)
        _print_json(data.model_dump(mode="json"))
    elif args.view == "hourly":
        _print_json([s.model_dump(mode="json") for s in reporter.hourly_stats(args.hours)])
    else:
        _print_json([m.model_dump(mode="json") for m in reporter.priority_metrics()])
    return 0


def run_pause(service: PublisherService, args: argparse.Namespace) -> int:
    service.dispatch.pause()
    _print_json({"paused": True})
    return 0


def run_resume(service: PublisherService, args: argparse.Namespace) -> int:
    service.dispatch.resume()
    _print_json({"paused": False})
    return 0


def run_health(service: PublisherService, args: argparse.Namespace) -> int:
    monitor = HealthMonitor(
        service.registry,
        service.wallet_pool,
        service.dispatch,
        service.worker_registry,
        worker_ttl=service.config.WORKER_HEARTBEAT_TTL,
        stuck_after=service.config.STUCK_PUBLISHING_SECONDS,
    )
    status = monitor.check()
    _print_json(status.model_dump(mode="json"))
    return 0 if status.healthy else 1


def run_serve_ops(service: PublisherService, args: argparse.Namespace) -> int:
    import uvicorn

    from publisher.monitoring.api import create_ops_app

    uvicorn.run(create_ops_app(service), host=args.host, port=args.port)
    return 0


COMMANDS = {
    "worker": run_worker,
    "maintain": run_maintain,
    "recover-stuck": run_recover_stuck,
    "retry-failed": run_retry_failed,
    "stats": run_stats,
    "health": run_health,
    "metrics": run_metrics,
    "pause": run_pause,
    "resume": run_resume,
    "serve-ops": run_serve_ops,
}


def main(argv: list[str] | None = None, service: PublisherService | None = None) -> int:
    """Parse arguments and run a command.

    Args:
        argv: Arguments without the program name (``sys.argv[1:]`` when None)
        service: Prebuilt service; built from settings when None

    Returns:
        Process exit code
    """
    args = build_parser().parse_args(argv)
    configure_logging(level=settings.LOG_LEVEL, json_logs=settings.JSON_LOGS)

    try:
        if service is None:
            create_tables()
            service = PublisherService.from_settings(settings)
        return COMMANDS[args.command](service, args)
    except (PublisherError, ValueError) as e:
        logger.error("Command failed", command=args.command, error=str(e))
        return 2


if __name__ == "__main__":
    sys.exit(main())
