"""Command line entrypoint for the pipeline processes."""

from __future__ import annotations

import argparse
import mimetypes
import signal
import sys
import threading
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

from imgpipe.core.config import Settings, get_settings
from imgpipe.core.errors import PipelineError
from imgpipe.core.logging import configure_logging, get_logger
from imgpipe.services.object_store import S3ObjectStore
from imgpipe.services.record_store import RecordStore, utcnow
from imgpipe.worker import runtime

logger = get_logger(__name__)


def _install_stop_handlers(stop_event: threading.Event) -> None:
    def _stop(signum, _frame):
        logger.info("shutdown_requested", signal=signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)


def cmd_worker(settings: Settings, _args: argparse.Namespace) -> int:
    stop_event = threading.Event()
    _install_stop_handlers(stop_event)
    runtime.run_worker(settings, stop_event)
    return 0


def cmd_completions(settings: Settings, _args: argparse.Namespace) -> int:
    stop_event = threading.Event()
    _install_stop_handlers(stop_event)
    runtime.run_completions(settings, stop_event)
    return 0


def cmd_submit(settings: Settings, args: argparse.Namespace) -> int:
    path = Path(args.file)
    content_type = mimetypes.guess_type(path.name)[0]
    service, producer_client = runtime.build_ingestion(settings)
    try:
        record = service.upload_and_process(
            path.read_bytes(),
            filename=path.name,
            description=args.description,
            content_type=content_type,
        )
    finally:
        producer_client.close()
    print(record.id)
    return 0


def cmd_stale(settings: Settings, args: argparse.Namespace) -> int:
    minutes = args.older_than_minutes if args.older_than_minutes is not None else settings.stale_after_minutes
    cutoff = utcnow() - timedelta(minutes=minutes)
    stale = RecordStore.from_url(settings.database_url).find_stale_pending(cutoff)
    for record in stale:
        print(f"{record.id}\t{record.created_at.isoformat()}\t{record.filename}")
    if stale:
        logger.warning("stale_pending_images", count=len(stale), older_than_minutes=minutes)
    return 1 if stale else 0


def cmd_init(settings: Settings, _args: argparse.Namespace) -> int:
    RecordStore.from_url(settings.database_url).create_schema()
    store = S3ObjectStore.from_settings(settings)
    for bucket in (settings.staging_bucket, settings.results_bucket):
        store.ensure_bucket(bucket)
    logger.info("environment_initialized", buckets=[settings.staging_bucket, settings.results_bucket])
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="imgpipe", description="Asynchronous thumbnail pipeline")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("worker", help="consume the task topic and render thumbnails").set_defaults(func=cmd_worker)
    commands.add_parser(
        "completions", help="consume the completion topic and update image records"
    ).set_defaults(func=cmd_completions)

    submit = commands.add_parser("submit", help="upload an image file and enqueue it")
    submit.add_argument("file")
    submit.add_argument("--description", default=None)
    submit.set_defaults(func=cmd_submit)

    stale = commands.add_parser("stale", help="list pending images older than a threshold")
    stale.add_argument("--older-than-minutes", type=int, default=None)
    stale.set_defaults(func=cmd_stale)

    commands.add_parser("init", help="create tables and buckets for local development").set_defaults(func=cmd_init)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    configure_logging()
    args = build_parser().parse_args(argv)
    try:
        return args.func(get_settings(), args)
    except PipelineError as exc:
        logger.error("command_failed", command=args.command, error=str(exc))
        return 2


if __name__ == "__main__":
    sys.exit(main())
