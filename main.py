from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from raindrop_notebook import config
from raindrop_notebook.orchestrator import RunAbortedError, check_status, run

logger = logging.getLogger("raindrop_notebook")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="raindrop-notebook",
        description="Collect Raindrop bookmarks by tag into a single NotebookLM note.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    subparsers = parser.add_subparsers(dest="command")

    sync = subparsers.add_parser("sync", help="sync bookmarks with the given tag into one note")
    sync.add_argument("--tag", required=True, help="Raindrop tag to collect")
    sync.add_argument("--dry-run", action="store_true", help="fetch and persist, but do not create the note")
    sync.add_argument("--max-urls", type=int, default=None, help="process at most N bookmarks")
    sync.add_argument("--output-dir", default=None, help="directory for run artifacts")

    subparsers.add_parser("status", help="check connection to both services")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    try:
        settings = config.Settings.from_env()
        if args.command == "sync":
            if args.max_urls is not None:
                settings.max_urls = args.max_urls
            if args.output_dir:
                settings.output_dir = Path(args.output_dir)
            settings.validate()
    except ValueError as exc:
        logging.error("Missing configuration: %s", exc)
        return 1

    if args.command == "status":
        status = check_status(settings)
        return 0 if all(status.values()) else 1

    if args.dry_run:
        logger.warning("Running in dry-run mode - no note will be created")
    try:
        summary = run(settings, args.tag, dry_run=args.dry_run)
    except RunAbortedError as exc:
        logging.error("Run aborted (%s): %s", exc.category, exc)
        if exc.summary is not None:
            logging.error(
                "Succeeded=%s Failed=%s Note=%s",
                exc.summary.succeeded,
                exc.summary.failed,
                exc.summary.note_id or "-",
            )
        for path in exc.written:
            logging.error("Partial artifact kept: %s", path)
        return 1
    except Exception as exc:  # noqa: BLE001
        logging.exception("Batch run failed: %s", exc)
        return 1

    if summary.total and summary.succeeded == 0:
        logging.error("All bookmarks failed in this batch.")
        return 1
    if summary.note_id:
        logging.info("Note created: %s %s", summary.note_id, summary.note_url or "")
    return 0


if __name__ == "__main__":
    sys.exit(main())
