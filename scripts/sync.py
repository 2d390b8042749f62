#!/usr/bin/env python3
"""
Run one sync pass of a repository into the local cache, or manage the list
of configured repositories.

Usage:
    python scripts/sync.py [--repo owner/name] [--database-url URL] [--quiet]
    python scripts/sync.py --list-repos
    python scripts/sync.py --add-repo owner/name
    python scripts/sync.py --remove-repo owner/name
    python scripts/sync.py --set-default owner/name

Without --repo the default configured repository is synced (REPOSITORIES
and REPOSITORY settings seed the list).

Ctrl-C (or SIGTERM) stops the pass at the next page or issue boundary; the
cache keeps everything written so far and the next run starts over from the
last complete pass.
"""
import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from issuecache.config import Settings, validate_repository
from issuecache.core.auth import resolve_token
from issuecache.core.cache_store import CacheStore
from issuecache.core.errors import IssueCacheError, classify_error, error_hint
from issuecache.core.github_client import GitHubClient
from issuecache.core.logging_utils import configure_logging
from issuecache.core.sync_engine import PHASE_ISSUES, SyncEngine, SyncResult
from issuecache.database import create_engine, create_session_maker, init_db


EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sync open GitHub issues and comments into the local cache.")
    parser.add_argument("--repo", help="Repository in owner/name form (default: the default configured repository)")
    parser.add_argument("--database-url", help="SQLAlchemy URL of the cache (default: DATABASE_URL setting)")
    parser.add_argument("--quiet", action="store_true", help="Only print the final summary")

    manage = parser.add_mutually_exclusive_group()
    manage.add_argument("--list-repos", action="store_true", help="List configured repositories and exit")
    manage.add_argument("--add-repo", metavar="OWNER/NAME", help="Add a configured repository and exit")
    manage.add_argument("--remove-repo", metavar="OWNER/NAME", help="Remove a configured repository and exit")
    manage.add_argument("--set-default", metavar="OWNER/NAME", help="Set the default repository and exit")
    return parser


def install_signal_handlers(loop: asyncio.AbstractEventLoop, cancel_event: asyncio.Event) -> None:
    """SIGINT/SIGTERM request cancellation; repeated signals are ignored."""
    def request_cancel() -> None:
        if not cancel_event.is_set():
            print("\nCancelling after the current step...", file=sys.stderr)
            cancel_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_cancel)
        except NotImplementedError:
            # Event loops without signal support (Windows); Ctrl-C then aborts the pass
            pass


def print_summary(result: SyncResult) -> None:
    print(
        f"{result.repository}: {result.issues_fetched} issue(s), "
        f"{result.comments_fetched} comment(s), {result.issues_deleted} deleted "
        f"({result.duration.total_seconds():.1f}s)"
    )


def print_error(e: IssueCacheError) -> None:
    hint = error_hint(e)
    print(f"Sync failed ({classify_error(e).value}): {e}", file=sys.stderr)
    print(f"{hint.message}: {hint.action}", file=sys.stderr)


async def open_store(settings: Settings):
    """Engine and store over an initialized cache, with settings' repositories seeded."""
    engine = create_engine(settings)
    try:
        await init_db(engine)
        store = CacheStore(create_session_maker(engine))
        await store.seed_repositories(settings.configured_repositories())
    except Exception:
        await engine.dispose()
        raise
    return engine, store


async def manage_repositories(args: argparse.Namespace, settings: Settings) -> int:
    try:
        engine, store = await open_store(settings)
    except IssueCacheError as e:
        print_error(e)
        return EXIT_ERROR

    try:
        if args.list_repos:
            repos = await store.list_repositories()
            if not repos:
                print("No repositories configured. Add one with --add-repo owner/name.")
                return EXIT_OK
            default = await store.get_default_repository()
            print("Configured repositories:")
            for repo in repos:
                last_sync = await store.get_last_sync_time(repo.name)
                synced = f"last sync {last_sync.isoformat()}Z" if last_sync else "never synced"
                marker = "*" if repo.name == default else " "
                suffix = " (default)" if repo.name == default else ""
                print(f"  {marker} {repo.name}{suffix}  [{synced}]")
            return EXIT_OK

        if args.add_repo:
            repo = validate_repository(args.add_repo)
            if not await store.add_repository(repo):
                print(f"{repo} is already configured.")
            elif await store.get_default_repository() == repo:
                print(f"Added {repo} and set it as the default repository.")
            else:
                print(f"Added {repo}.")
            return EXIT_OK

        if args.remove_repo:
            repo = validate_repository(args.remove_repo)
            if not await store.remove_repository(repo):
                print(f"error: {repo} is not configured", file=sys.stderr)
                return EXIT_USAGE
            print(f"Removed {repo}; its cached issues were kept.")
            return EXIT_OK

        repo = validate_repository(args.set_default)
        if not await store.set_default_repository(repo):
            print(f"error: {repo} is not configured", file=sys.stderr)
            return EXIT_USAGE
        print(f"{repo} is now the default repository.")
        return EXIT_OK
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_USAGE
    except IssueCacheError as e:
        print_error(e)
        return EXIT_ERROR
    finally:
        await engine.dispose()


async def run(repo: Optional[str], settings: Settings, quiet: bool) -> int:
    try:
        engine, store = await open_store(settings)
    except IssueCacheError as e:
        print_error(e)
        return EXIT_ERROR

    try:
        if repo is None:
            repo = await store.get_default_repository()
            if repo is None:
                print("error: no repository given and none configured (use --repo or --add-repo)", file=sys.stderr)
                return EXIT_USAGE

        cancel_event = asyncio.Event()
        install_signal_handlers(asyncio.get_running_loop(), cancel_event)

        def on_progress(phase: str, current: int, total: int) -> None:
            if quiet:
                return
            if phase == PHASE_ISSUES:
                print(f"  synced {current} issue(s)")
            elif total:
                print(f"    comments {current}/{total}")

        try:
            token, source = await resolve_token(settings)
            if not quiet:
                print(f"Syncing {repo} (token from {source.value})...")
            async with GitHubClient.from_settings(settings, token) as client:
                result = await SyncEngine(store, client).sync(repo, progress=on_progress, cancel_event=cancel_event)
        except IssueCacheError as e:
            if e.partial_result is not None:
                print_summary(e.partial_result)
            print_error(e)
            return EXIT_ERROR

        if result.cancelled:
            print("Sync cancelled; last sync time unchanged.")
        print_summary(result)
        return EXIT_OK
    finally:
        await engine.dispose()


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = Settings()
    except ValueError as e:
        print(f"error: invalid settings: {e}", file=sys.stderr)
        return EXIT_USAGE
    if args.database_url:
        settings = settings.model_copy(update={"database_url": args.database_url})
    configure_logging("WARNING" if args.quiet else settings.log_level)

    repo = None
    try:
        settings.configured_repositories()
        if args.repo:
            repo = validate_repository(args.repo)
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_USAGE

    if args.list_repos or args.add_repo or args.remove_repo or args.set_default:
        return asyncio.run(manage_repositories(args, settings))

    return asyncio.run(run(repo, settings, args.quiet))


if __name__ == "__main__":
    sys.exit(main())
