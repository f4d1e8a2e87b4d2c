"""
CLI entry point for gitlab-mirror. Wires the pipeline: token -> fetch -> transform -> store -> link -> cursor
"""

import argparse
import json
import logging
import sys
from typing import Optional

from config import Settings, configure_logging, load_settings
from correlate.linker import link_parent_events, update_activity_metadata, validate_relationships
from errors import ConcurrencyLimitReached, ConfigError, RefreshInProgress
from ingest.gitlab import GitLabClient
from ingest.token import TokenManager
from normalize.util import format_ts
from pipeline.manual import ManualRefreshController, countdown_message
from pipeline.scheduler import CronScheduler, JobGate, SyncJob, run_with_retries
from pipeline.user_sync import UserSyncPipeline
from storage.cursor import get_last_sync
from storage.db import Database
from storage.journal import StepJournal

logger = logging.getLogger(__name__)


def _print_json(obj):
    print(json.dumps(obj, indent=2, default=str))


def build_pipeline(settings: Settings, db: Database, session=None) -> UserSyncPipeline:
    """Assemble the per-user pipeline from settings. `session` is shared by the token manager and API clients."""
    token_manager = TokenManager(
        db,
        settings.gitlab_url,
        client_id=settings.client_id,
        client_secret=settings.client_secret,
        timeout=settings.request_timeout,
        refresh_skew=settings.token_refresh_skew,
        session=session,
    )

    def client_factory(access_token: str) -> GitLabClient:
        return GitLabClient(
            access_token,
            base_url=settings.gitlab_url,
            timeout=settings.request_timeout,
            per_page=settings.per_page,
            max_pages=settings.max_pages,
            session=session,
        )

    return UserSyncPipeline(
        db,
        token_manager,
        client_factory,
        journal=StepJournal(db, ttl_seconds=settings.journal_ttl),
        store_batch_size=settings.store_batch_size,
        people_batch_size=settings.people_batch_size,
    )


def _cmd_run(settings: Settings, db: Database, args) -> int:
    job = SyncJob(db, build_pipeline(settings, db), JobGate(settings.max_concurrency))
    try:
        summary = run_with_retries(job, settings.job_retries, run_id=args.run_id or None)
    except ConcurrencyLimitReached as ex:
        print(f"Not started: {ex}")
        return 2
    _print_json(summary.to_dict())
    return 0 if summary.healthy else 1


def _cmd_serve(settings: Settings, db: Database, args) -> int:
    job = SyncJob(db, build_pipeline(settings, db), JobGate(settings.max_concurrency))
    scheduler = CronScheduler(job, settings.cron, retries=settings.job_retries)
    print(f"Scheduling sync with cron '{settings.cron}'. Press Ctrl-C to stop.")
    try:
        scheduler.run_forever(max_ticks=args.max_ticks)
    except KeyboardInterrupt:
        print("Stopping scheduler...")
    finally:
        scheduler.stop(join_timeout=settings.request_timeout * 4)
    return 0


def _cmd_refresh(settings: Settings, db: Database, args) -> int:
    controller = ManualRefreshController(build_pipeline(settings, db), delays=settings.manual_retry_delays)
    try:
        handle = controller.start(args.user, on_countdown=lambda s: print(countdown_message(s)))
    except RefreshInProgress as ex:
        print(str(ex))
        return 2
    try:
        outcome = handle.wait()
    except KeyboardInterrupt:
        # stops any pending backoff; an attempt already running finishes first
        handle.cancel()
        outcome = handle.wait()
    print(outcome.message)
    if args.verbose and outcome.result is not None:
        _print_json(outcome.result.to_dict())
    return 0 if outcome.ok else 1


def _cmd_link(settings: Settings, db: Database, args) -> int:
    linked = link_parent_events(db, args.user)
    updated = update_activity_metadata(db, args.user)
    _print_json({"user_id": args.user, "linked": linked, "metadata_updated": updated})
    return 0


def _cmd_validate(settings: Settings, db: Database, args) -> int:
    report = validate_relationships(db, args.user)
    _print_json(report.to_dict())
    return 0 if report.ok else 1


def _cmd_status(settings: Settings, db: Database, args) -> int:
    last = get_last_sync(db, args.user)
    _print_json({"user_id": args.user, "last_sync_at": format_ts(last), "never_synced": last is None})
    return 0


def _confirm(prompt: str, force: bool) -> bool:
    if force:
        return True
    answer = input(f"{prompt} [y/N]: ")
    return answer.strip().lower() in ("y", "yes")


def _cmd_journal(settings: Settings, db: Database, args) -> int:
    journal = StepJournal(db, ttl_seconds=settings.journal_ttl)
    if args.info:
        _print_json(journal.stats())
    elif args.list:
        _print_json(journal.list_keys(limit=args.limit, prefix=args.prefix or None))
    elif args.get:
        entry = journal.get(args.get)
        if entry is None:
            print(f"Journal key not found: {args.get}")
            return 1
        _print_json(entry)
    elif args.remove:
        if not _confirm(f"Are you sure you want to remove journal key '{args.remove}' from {db.path}?", args.force):
            print("Aborted journal key removal.")
            return 1
        removed = journal.delete_key(args.remove)
        if not removed:
            print(f"Journal key not found: {args.remove}")
            return 1
        print(f"Removed {removed} row(s) for key: {args.remove}")
    elif args.clear:
        if not _confirm(f"Are you sure you want to clear the step journal at {db.path}? This cannot be undone.", args.force):
            print("Aborted journal clear.")
            return 1
        journal.clear()
        print(f"Cleared step journal at {db.path}")
    else:
        _print_json(journal.stats())
    return 0


COMMANDS = {
    "run": _cmd_run,
    "serve": _cmd_serve,
    "refresh": _cmd_refresh,
    "link": _cmd_link,
    "validate": _cmd_validate,
    "status": _cmd_status,
    "journal": _cmd_journal,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="GitLab activity mirror")
    parser.add_argument("--config", type=str, default=None, help="Path to YAML settings file (or set MIRROR_CONFIG)")
    parser.add_argument("--db", type=str, default=None, help="Path to SQLite database (overrides MIRROR_DB_PATH env)")
    parser.add_argument("--log-level", type=str, default=None, help="Log level (overrides MIRROR_LOG_LEVEL env)")
    parser.add_argument("--log-file", type=str, default=None, help="Rotating log file path (overrides MIRROR_LOG_FILE env)")
    parser.add_argument("--cron", type=str, default=None, help="Cron expression for scheduled runs (overrides MIRROR_POLLING_CRON env)")
    parser.add_argument("--max-concurrency", type=int, default=None, help="Maximum concurrent job instances (overrides MIRROR_MAX_CONCURRENCY env)")
    parser.add_argument("--job-retries", type=int, default=None, help="Run-level retry budget (overrides MIRROR_JOB_RETRIES env)")
    parser.add_argument("--request-timeout", type=float, default=None, help="HTTP timeout in seconds (overrides MIRROR_REQUEST_TIMEOUT env)")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run one scheduled sync over all users now")
    run.add_argument("--run-id", type=str, default="", help="Reuse a run id to replay journaled steps of a failed run")

    serve = sub.add_parser("serve", help="Run syncs on the cron schedule until interrupted")
    serve.add_argument("--max-ticks", type=int, default=None, help=argparse.SUPPRESS)

    refresh = sub.add_parser("refresh", help="Manually refresh one user")
    refresh.add_argument("--user", type=str, required=True)
    refresh.add_argument("--verbose", action="store_true", help="Print the sync counts after the message")

    for name, help_text in (
        ("link", "Re-link comments and recompute parent metadata for a user"),
        ("validate", "Check comment links and parent metadata for a user"),
        ("status", "Show the last successful sync time for a user"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--user", type=str, required=True)

    journal = sub.add_parser("journal", help="Inspect or maintain the step journal")
    group = journal.add_mutually_exclusive_group()
    group.add_argument("--info", action="store_true", help="Show journal statistics")
    group.add_argument("--list", action="store_true", help="List journal keys, newest first")
    group.add_argument("--get", type=str, default="", help="Show one journal entry")
    group.add_argument("--remove", type=str, default="", help="Remove one journal entry")
    group.add_argument("--clear", action="store_true", help="Remove every journal entry")
    journal.add_argument("--prefix", type=str, default="", help="Only list keys starting with this prefix (with --list)")
    journal.add_argument("--limit", type=int, default=1000)
    journal.add_argument("--force", action="store_true", help="Do not ask for confirmation (with --remove/--clear)")
    return parser


def main(argv: Optional[list] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(
            args.config,
            db_path=args.db,
            log_level=args.log_level,
            log_file=args.log_file,
            cron=args.cron,
            max_concurrency=args.max_concurrency,
            job_retries=args.job_retries,
            request_timeout=args.request_timeout,
        )
    except ConfigError as ex:
        parser.error(str(ex))

    configure_logging(settings.log_level, settings.log_file)
    logger.debug("settings: %r", settings)

    db = Database(settings.db_path, timeout=settings.db_timeout)
    try:
        return COMMANDS[args.command](settings, db, args)
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
