#!/usr/bin/env python3
"""
hlsmill CLI - operate the transcode pipeline.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

from config import DEFAULT_JOB_PRIORITY, LOG_LEVEL, WATCHER_ENABLED, WORKER_COUNT
from core.database import create_tables, database
from core.errors import TranscodeError, sanitize_error_message
from core.job_queue import get_job_queue
from core.records import RecordStore
from core.redis_client import RedisClient
from worker.ingest import ingest_file, queue_video, requeue_failed
from worker.pool import WorkerPool
from worker.transcoder import JobProcessor
from worker.watcher import UploadWatcher

logger = logging.getLogger(__name__)

console = Console()


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


def _run(coro_fn, args):
    """Run an async command with the database connected; map known errors to exit code 1."""

    async def runner():
        await database.connect()
        try:
            return await coro_fn(args)
        finally:
            await database.disconnect()
            await RedisClient.reset_instance()

    try:
        return asyncio.run(runner())
    except (CLIError, TranscodeError) as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


async def _ingest(args):
    path = Path(args.file)
    if not path.is_file():
        raise CLIError(f"File not found: {path}")
    store = RecordStore(database)
    video_id = await ingest_file(store, get_job_queue(), path.resolve(), priority=args.priority)
    if video_id is None:
        raise CLIError(f"{path} was not ingested (empty or already known)")
    console.print(f"Ingested {path.name} as video {video_id}")


async def _queue(args):
    store = RecordStore(database)
    queued = await queue_video(store, get_job_queue(), args.video_id, priority=args.priority)
    console.print(f"Queued {len(queued)} profiles of video {args.video_id}")


async def _requeue(args):
    store = RecordStore(database)
    requeued = await requeue_failed(store, get_job_queue(), args.video_id, priority=args.priority, force=args.force)
    console.print(f"Re-queued {len(requeued)} failed profiles of video {args.video_id}")


async def _status(args):
    store = RecordStore(database)
    progress = await store.video_progress(args.video_id)
    video = progress["video"]

    console.print(f"[bold]Video {video['id']}[/bold] {video['original_filename']}")
    console.print(f"  Status: {video['status']}  Overall progress: {progress['overall_progress']}%")
    if video["master_playlist_path"]:
        console.print(f"  Master playlist: {video['master_playlist_path']}")
    if video["error_message"]:
        console.print(f"  Error: {sanitize_error_message(video['error_message'])}")

    table = Table(title="Profiles")
    table.add_column("ID", justify="right")
    table.add_column("Resolution")
    table.add_column("Bitrate", justify="right")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Segments", justify="right")
    table.add_column("Error")
    for p in progress["profiles"]:
        table.add_row(
            str(p["id"]),
            p["resolution"],
            f"{p['bitrate']}k",
            p["status"],
            f"{p['progress_percentage'] or 0}%",
            str(p["total_segments"] or 0),
            sanitize_error_message(p["error_message"]) or "-",
        )
    console.print(table)


async def _queue_stats(args):
    store = RecordStore(database)
    stats = await get_job_queue().get_queue_stats()
    counts = await store.job_status_counts()

    if stats["available"]:
        console.print(f"Queue {stats['queue']}: {stats['length']} waiting")
    else:
        console.print(f"[yellow]Queue {stats['queue']} is unavailable[/yellow]")

    table = Table(title="Jobs by status")
    table.add_column("Status")
    table.add_column("Count", justify="right")
    for status, count in counts.items():
        table.add_row(status, str(count))
    console.print(table)

    queued = await store.list_queued_jobs()
    if queued:
        table = Table(title="Queued jobs")
        table.add_column("Job", justify="right")
        table.add_column("Video", justify="right")
        table.add_column("Profile", justify="right")
        table.add_column("Priority", justify="right")
        table.add_column("Retries", justify="right")
        for job in queued:
            table.add_row(
                str(job["id"]),
                str(job["video_id"]),
                str(job["profile_id"]),
                str(job["priority"]),
                f"{job['retry_count']}/{job['max_retries']}",
            )
        console.print(table)


async def _delete(args):
    store = RecordStore(database)
    if not await store.delete_video(args.video_id):
        raise CLIError(f"Video {args.video_id} not found")
    console.print(f"Video {args.video_id} deleted.")


async def _worker(args):
    store = RecordStore(database)
    queue = get_job_queue()
    pool = WorkerPool(JobProcessor(store), queue, size=args.workers)
    pool.install_signal_handlers()

    watcher = None
    if args.watch:
        watcher = UploadWatcher(store, queue)
        await watcher.start()

    try:
        await pool.run()
    finally:
        if watcher is not None:
            await watcher.stop()


def cmd_init_db(args):
    """Create the database tables."""
    create_tables()
    console.print("Database tables created successfully!")


def cmd_ingest(args):
    _run(_ingest, args)


def cmd_queue(args):
    _run(_queue, args)


def cmd_requeue(args):
    _run(_requeue, args)


def cmd_status(args):
    _run(_status, args)


def cmd_queue_stats(args):
    _run(_queue_stats, args)


def cmd_delete(args):
    _run(_delete, args)


def cmd_worker(args):
    _run(_worker, args)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hlsmill", description="hlsmill - HLS transcode orchestration")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_parser.set_defaults(func=cmd_init_db)

    ingest_parser = subparsers.add_parser("ingest", help="Register a source file and queue all its profiles")
    ingest_parser.add_argument("file", help="Source video file")
    ingest_parser.add_argument("-p", "--priority", type=int, default=DEFAULT_JOB_PRIORITY, help="Job priority")
    ingest_parser.set_defaults(func=cmd_ingest)

    queue_parser = subparsers.add_parser("queue", help="Queue the pending profiles of a video")
    queue_parser.add_argument("video_id", type=positive_int, help="Video ID")
    queue_parser.add_argument("-p", "--priority", type=int, default=DEFAULT_JOB_PRIORITY, help="Job priority")
    queue_parser.set_defaults(func=cmd_queue)

    requeue_parser = subparsers.add_parser("requeue", help="Re-queue the failed profiles of a video")
    requeue_parser.add_argument("video_id", type=positive_int, help="Video ID")
    requeue_parser.add_argument("-p", "--priority", type=int, default=None, help="Override job priority")
    requeue_parser.add_argument("--force", action="store_true", help="Ignore the retry limit")
    requeue_parser.set_defaults(func=cmd_requeue)

    status_parser = subparsers.add_parser("status", help="Show a video and its profiles")
    status_parser.add_argument("video_id", type=positive_int, help="Video ID")
    status_parser.set_defaults(func=cmd_status)

    stats_parser = subparsers.add_parser("queue-stats", help="Show queue length and job counts")
    stats_parser.set_defaults(func=cmd_queue_stats)

    del_parser = subparsers.add_parser("delete", help="Delete a video with its profiles and jobs")
    del_parser.add_argument("video_id", type=positive_int, help="Video ID to delete")
    del_parser.set_defaults(func=cmd_delete)

    worker_parser = subparsers.add_parser("worker", help="Run the transcode worker pool")
    worker_parser.add_argument(
        "-w", "--workers", type=positive_int, default=WORKER_COUNT, help=f"Concurrent workers (default: {WORKER_COUNT})"
    )
    worker_parser.add_argument(
        "--watch",
        action=argparse.BooleanOptionalAction,
        default=WATCHER_ENABLED,
        help="Ingest new files from the uploads directory",
    )
    worker_parser.set_defaults(func=cmd_worker)

    return parser


def main(argv=None):
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    args = build_parser().parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
