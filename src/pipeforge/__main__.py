"""pipeforge CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from pipeforge.config import load_config


async def _cleanup_stale(args: argparse.Namespace) -> int:
    from pipeforge.reconciliation import StaleStateReconciler, VerdictAction
    from pipeforge.registry import ProjectRegistry

    config = load_config(args.config)
    projects = ProjectRegistry(config.database.path)
    await projects.initialize()
    try:
        reconciler = StaleStateReconciler(config.cleanup, projects)
        report = await reconciler.reconcile(
            dry_run=args.dry_run,
            stale_minutes=args.stale_minutes,
            job_timeout=args.job_timeout,
        )
    finally:
        await projects.close()

    prefix = "[DRY RUN] " if args.dry_run else ""
    print(f"{prefix}Found {report.stale_projects_found} stale projects")
    for verdict in report.verdicts:
        if verdict.action == VerdictAction.LEAVE:
            print(f"  {verdict.project_id}: left alone ({verdict.reason})")
        else:
            detail = f" - {verdict.error_message}" if verdict.error_message else ""
            print(f"  {verdict.project_id}: {verdict.action.value}{detail}")
    if report.stale_jobs_found:
        print(f"{prefix}Found {report.stale_jobs_found} jobs stuck in running status")
    print(report.summary())
    return 0


def main():
    parser = argparse.ArgumentParser(
        prog="pipeforge",
        description="pipeforge — multi-step AI content generation pipelines",
    )

    subparsers = parser.add_subparsers(dest="command")

    # pipeforge serve
    serve_parser = subparsers.add_parser("serve", help="Start the API and webhook server")
    serve_parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to pipeforge.yaml (default: ./pipeforge.yaml if present)",
    )
    serve_parser.add_argument(
        "--host",
        default=None,
        help="Host to bind to (default: server.host from config)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to bind to (default: server.port from config)",
    )
    serve_parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    # pipeforge cleanup-stale
    cleanup_parser = subparsers.add_parser(
        "cleanup-stale", help="Fail or complete projects stuck in processing"
    )
    cleanup_parser.add_argument("--config", type=Path, default=None)
    cleanup_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be cleaned up without making changes",
    )
    cleanup_parser.add_argument(
        "--stale-minutes",
        type=int,
        default=30,
        help="Minutes before a processing project is considered stale (default: 30)",
    )
    cleanup_parser.add_argument(
        "--job-timeout",
        type=int,
        default=60,
        help="Minutes before a running job is considered stuck (default: 60)",
    )
    cleanup_parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command == "cleanup-stale":
        sys.exit(asyncio.run(_cleanup_stale(args)))

    config = load_config(args.config)

    import uvicorn

    from pipeforge.server import create_app

    app = create_app(config_path=args.config)
    uvicorn.run(
        app,
        host=args.host or config.server.host,
        port=args.port or config.server.port,
        log_level=args.log_level.lower(),
    )


if __name__ == "__main__":
    main()
