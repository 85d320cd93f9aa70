"""Command-line entry point that brings the Coupler installation up to date."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Callable

from app.config import get_launcher_config, load_launcher_config
from app.version import get_app_version
from services.update.builder import build_update_orchestrator, run_update_cycle_in_background
from services.update.errors import UpdateError
from services.update.service import CycleResult
from shared.logging_config import configure_launcher_logging

_LOGGER = logging.getLogger(__name__)

_JOIN_INTERVAL = 0.2


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--root",
        type=Path,
        help="Installation directory (defaults to COUPLER_HOME or the per-user directory)",
    )
    parser.add_argument(
        "--index-url",
        help="Release catalog to check instead of the configured one",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Launcher configuration JSON file",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Record debug output in the launcher log",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {get_app_version()}")
    return parser.parse_args(argv)


def _transfer_printer(stream) -> Callable[[str, int, int], None]:
    last_percent: dict[str, int] = {}

    def on_transfer(name: str, received: int, total: int) -> None:
        if total <= 0:
            return
        percent = min(100, received * 100 // total)
        if last_percent.get(name) == percent:
            return
        last_percent[name] = percent
        end = "\n" if percent == 100 else ""
        print(f"\r  {name}: {percent:3d}%", end=end, file=stream, flush=True)

    return on_transfer


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    log_path = configure_launcher_logging(verbose=args.verbose)

    config = load_launcher_config(args.config) if args.config else get_launcher_config()
    _LOGGER.info("Coupler launcher %s starting", get_app_version())

    orchestrator = build_update_orchestrator(
        config,
        root=args.root,
        index_url=args.index_url,
        report=print,
        on_transfer=_transfer_printer(sys.stderr) if sys.stderr.isatty() else None,
    )
    results: list[CycleResult] = []
    worker = run_update_cycle_in_background(orchestrator, results.append)
    try:
        while worker.is_alive():
            worker.join(_JOIN_INTERVAL)
    except KeyboardInterrupt:
        orchestrator.shutdown()
        worker.join()

    result = results[0] if results else CycleResult(error=_missing_result_error(orchestrator.error))
    if not result.succeeded:
        print("Quitting...", file=sys.stderr)
        print(f"See {log_path} for details.", file=sys.stderr)
        return 1

    outcome = result.unwrap()
    for name, path in outcome.artifacts.items():
        print(f"{name}: {path}")
    return 0


def _missing_result_error(error: UpdateError | None) -> UpdateError:
    if error is not None:
        return error
    _LOGGER.error("Update thread stopped without reporting a result")
    return UpdateError("The update cycle stopped unexpectedly")


if __name__ == "__main__":
    raise SystemExit(main())
