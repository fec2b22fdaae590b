#!/usr/bin/env python3
"""runner-sync command line.

Usage:
    runner-sync                  # full handoff (same as `runner-sync sync`)
    runner-sync discover         # bootstrap, join, find the predecessor
    runner-sync publish          # commit + push .runner-data only
    runner-sync status           # read-only report
    runner-sync leave            # log this node out of the tailnet

Exit codes: 0 success, 2 configuration, 3 network, 4 external tool,
5 data sync, 1 anything else.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence

from runner_sync import __version__
from runner_sync.config.handoff_config import HandoffConfig
from runner_sync.coordination.handoff_orchestrator import (
    HandoffOrchestrator,
    HandoffReport,
    PipelineMode,
)
from runner_sync.core.error_handler import (
    EXIT_SUCCESS,
    EXIT_UNCLASSIFIED,
    RunnerSyncError,
    exit_code_for,
    format_error,
)
from runner_sync.core.logging_config import PACKAGE_LOGGER, log_banner, setup_logging
from runner_sync.core.status import collect_status, log_status
from runner_sync.providers.tailscale_directory import TailscaleDirectory

logger = logging.getLogger(PACKAGE_LOGGER)

COMMANDS = ("sync", "discover", "publish", "status", "leave")

_PIPELINE_MODES = {
    "sync": PipelineMode.SYNC,
    "discover": PipelineMode.DISCOVER,
    "publish": PipelineMode.PUBLISH,
}

ENVIRONMENT_HELP = """\
environment:
  TAILSCALE_ENABLE           join the tailnet and look for a predecessor (default: off)
  TAILSCALE_CLIENT_ID        OAuth client id (required when TAILSCALE_ENABLE=1)
  TAILSCALE_CLIENT_SECRET    OAuth client secret (required when TAILSCALE_ENABLE=1)
  TAILSCALE_TAGS             tag filter, comma-separated (default: tag:ci)
  SERVICES_TO_STOP           services to stop on the predecessor (default: cloudflared,pocketbase,http-server)
  GIT_PUSH_ENABLED           publish .runner-data with git (default: on)
  GIT_BRANCH                 branch to push (default: main)
  SSH_PATH / RSYNC_PATH / SCP_PATH   tool overrides
  TOOL_CWD                   working directory (default: current directory)
  RUNNER_SYNC_REMOTE_USERS   accounts tried on peers, in order (default: runner,root)

Values may also come from a .env file or runner-sync.yaml in the working directory.
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="runner-sync",
        description="Hand working data over from the previous CI runner on the tailnet.",
        epilog=ENVIRONMENT_HELP,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "command", nargs="?", default="sync", choices=COMMANDS,
        help="Operation to run (default: sync)",
    )
    parser.add_argument("--cwd", help="Working directory (overrides TOOL_CWD)")
    parser.add_argument("--config", help="YAML config file (default: runner-sync.yaml in the working directory)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug output")
    parser.add_argument("-q", "--quiet", action="store_true", help="Warnings and errors only")
    parser.add_argument("--version", action="version", version=f"runner-sync {__version__}")
    return parser


def _log_report(report: HandoffReport) -> None:
    for stage, result in report.results.items():
        suffix = f" ({result.detail.get('reason')})" if result.detail.get("reason") else ""
        logger.info(f"  {stage.value}: {result.state.value}{suffix}")


async def run_command(command: str, config: HandoffConfig) -> int:
    if command == "status":
        log_status(await collect_status(config, TailscaleDirectory(config)), logger)
        return EXIT_SUCCESS

    if command == "leave":
        await TailscaleDirectory(config).leave()
        return EXIT_SUCCESS

    orchestrator = HandoffOrchestrator(config)
    report = await orchestrator.run(orchestrator.plan(_PIPELINE_MODES[command]))
    logger.info("Summary:")
    _log_report(report)
    return EXIT_SUCCESS


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = HandoffConfig.load(
            cli_overrides={
                "cwd": args.cwd,
                "verbose": args.verbose or None,
                "quiet": args.quiet or None,
            },
            config_file=args.config,
        )
    except RunnerSyncError as e:
        setup_logging(version=__version__)
        logger.error(format_error(e))
        return e.exit_code

    setup_logging(
        verbose=config.verbose,
        quiet=config.quiet,
        version=__version__,
        environ=config.environ,
    )
    log_banner(logger, __version__, args.command)
    logger.debug(f"Working directory: {config.cwd}")

    try:
        return asyncio.run(run_command(args.command, config))
    except RunnerSyncError as e:
        logger.error(format_error(e))
        return e.exit_code
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_UNCLASSIFIED
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return exit_code_for(e)


if __name__ == "__main__":
    sys.exit(main())
