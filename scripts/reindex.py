#!/usr/bin/env python
"""Load a directory of documents into the knowledge base.

Usage:
    python scripts/reindex.py                  # Add every document under DOCS_DIR
    python scripts/reindex.py --rebuild        # Remove existing entries first
    python scripts/reindex.py --docs-dir faq/  # Use another directory
"""
import argparse
import asyncio
import sys
import time
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from supportdesk import config
from supportdesk.errors import ConfigurationError
from supportdesk.log_config import configure_logging
from supportdesk.services import build_services
import structlog

logger = structlog.get_logger()

SUMMARY_FIELDS = [
    ("files_processed", "Imported"),
    ("files_failed", "Failed"),
    ("chunks_created", "Chunks"),
    ("embeddings_generated", "Embeddings"),
]


class ImportProgress:
    """One status line per file on stderr, then a summary on stdout."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.started = time.monotonic()

    def __call__(self, current: int, total: int, file_path: Path):
        line = f"[{current:>{len(str(total))}}/{total}] {file_path.name}"
        if self.verbose:
            print(line, file=sys.stderr)
        else:
            print(f"\r{line:<72}", end="", file=sys.stderr, flush=True)

    def summary(self, stats: dict, docs_dir: Path) -> str:
        elapsed = time.monotonic() - self.started
        rows = [f"{label:<11} {stats[key]}" for key, label in SUMMARY_FIELDS]
        rows.append(f"{'Elapsed':<11} {elapsed:.1f}s")
        if stats["files_failed"]:
            rows.append(
                f"\n{stats['files_failed']} file(s) in {docs_dir} are not fully searchable; "
                "retry them with POST /api/knowledge/<id>/reembed."
            )
        return "\n".join(rows)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument(
        "--rebuild",
        action="store_true",
        help="Delete every existing knowledge entry before importing",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Print one line per file and log at DEBUG level",
    )
    parser.add_argument(
        "--docs-dir",
        type=Path,
        default=config.DOCS_DIR,
        help=f"Documents directory (default: {config.DOCS_DIR})",
    )
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    services = build_services()
    services.database.init_database()

    if args.rebuild:
        removed = sum(services.ingest.delete(entry["id"]) for entry in services.database.list_entries())
        logger.info("knowledge_base_cleared", entries_removed=removed)

    progress = ImportProgress(verbose=args.verbose)
    stats = await services.ingest.ingest_directory(args.docs_dir, progress_callback=progress)
    if not args.verbose:
        print(file=sys.stderr)
    print(progress.summary(stats, args.docs_dir))

    return 1 if stats["files_failed"] else 0


def main(argv=None) -> int:
    args = parse_args(argv)
    configure_logging("DEBUG" if args.verbose else None)

    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        print("\nImport cancelled.", file=sys.stderr)
        return 130
    except (FileNotFoundError, ConfigurationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        logger.error("reindex_failed", error=str(e), error_type=type(e).__name__)
        return 1


if __name__ == "__main__":
    sys.exit(main())
