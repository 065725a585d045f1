"""
Command-line entry point for audit-pulse.

    audit-pulse run https://example.com --type standard
    audit-pulse hub --port 3001
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from audit_pulse.api import AuditStartError, AuditType, StartAuditRequest
from audit_pulse.config import Config, ConfigManager, config_manager
from audit_pulse.context import realtime_context
from audit_pulse.reducer import JobProgressView
from audit_pulse.session import JobState

logger = logging.getLogger("audit_pulse")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="audit-pulse", description=__doc__.strip().splitlines()[0])
    parser.add_argument("--config", help="Path to config.yaml (default: ~/.audit-pulse/config.yaml)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Start an audit and follow its progress")
    run.add_argument("url")
    run.add_argument(
        "--type",
        dest="audit_type",
        choices=[t.value for t in AuditType],
        default=AuditType.COMPREHENSIVE.value,
    )

    hub = commands.add_parser("hub", help="Serve the development notification hub")
    hub.add_argument("--host")
    hub.add_argument("--port", type=int)
    return parser


def _log_view(view: JobProgressView) -> None:
    stage = view.stages[view.current_step] if view.stages else None
    logger.info(
        f"{view.status.value:<9} {view.overall_progress:5.1f}% "
        f"| {stage.stage.name if stage else '-'}: {stage.progress if stage else 0}% "
        f"| {view.factors_analyzed}/{view.total_factors} factors"
    )


async def run_audit(url: str, audit_type: AuditType, config: Config) -> int:
    """Run one audit to completion. Returns the process exit code."""
    async with realtime_context(config) as context:
        session = context.session()
        session.on_update(_log_view)
        try:
            job_id = await session.start(StartAuditRequest.for_url(url, audit_type))
        except AuditStartError as e:
            logger.error(str(e))
            return 1

        logger.info(f"Audit {job_id} started ({session.source_kind} progress)")
        await session.wait()

    if session.state == JobState.COMPLETED:
        logger.info(f"Audit {job_id} completed")
        return 0
    logger.error(f"Audit {job_id} ended {session.state.value}: {session.error or '-'}")
    return 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    manager = ConfigManager(Path(args.config)) if args.config else config_manager
    config = manager.load()

    if args.command == "run":
        return asyncio.run(run_audit(args.url, AuditType(args.audit_type), config))

    from audit_pulse.hub import NotificationHub

    hub_config = config.hub
    if args.host:
        hub_config = hub_config.model_copy(update={"host": args.host})
    if args.port:
        hub_config = hub_config.model_copy(update={"port": args.port})
    NotificationHub(hub_config).serve()
    return 0


if __name__ == "__main__":
    sys.exit(main())
