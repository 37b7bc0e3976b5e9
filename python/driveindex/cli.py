"""
Command line interface.

    driveindex --root ~/Drive crawl
    driveindex --root ~/Drive watch
    driveindex --root ~/Drive search "fractions" --principal alice@school.org --facet subject=Math
    driveindex status
    driveindex jobs --state review
"""

import argparse
import asyncio
import json
import logging
import signal
from pathlib import Path

from .config import EngineConfig
from .connectors import LocalDriveConnector
from .errors import EngineError
from .ingestor import ChangeIngestor
from .models import JobState, SearchQuery
from .orchestrator import Orchestrator
from .search import parse_facet_args


logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="driveindex", description="Drive crawl & metadata index engine")
    parser.add_argument("--root", default=".", help="Local drive folder to index (default: current directory)")
    parser.add_argument("--db", help="SQLite database path (default: ~/.driveindex/driveindex.db)")
    parser.add_argument(
        "--principal-default", action="append", default=[], metavar="PRINCIPAL",
        help="Principal granted access to every file (repeatable)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    sub = parser.add_subparsers(dest="command", required=True)

    crawl = sub.add_parser("crawl", help="Run a full crawl now")
    crawl.add_argument("--scope", help="Folder id to crawl (default: root)")

    watch = sub.add_parser("watch", help="Crawl, then follow changes until interrupted")
    watch.add_argument("--no-initial-crawl", action="store_true", help="Skip the initial full crawl")

    search = sub.add_parser("search", help="Query the index")
    search.add_argument("text", nargs="?", default="", help="Free text")
    search.add_argument("--principal", required=True, help="Who is searching")
    search.add_argument("--facet", action="append", metavar="NAME=VALUE", help="Facet filter (repeatable)")
    search.add_argument("--page", type=int, default=1)
    search.add_argument("--page-size", type=int)
    search.add_argument("--json", action="store_true", help="Print the raw response")

    status = sub.add_parser("status", help="Crawl status of a scope")
    status.add_argument("--scope", help="Folder id (default: root)")

    jobs = sub.add_parser("jobs", help="List crawl jobs by state")
    jobs.add_argument("--state", choices=[s.value for s in JobState], default=JobState.PROCESSING.value)
    jobs.add_argument("--history", action="store_true", help="Show the transition log of each job")

    for name, help_text in (
        ("cancel", "Cancel a queued or running job"),
        ("resolve", "Close a job in review"),
        ("requeue", "Retry a failed job"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("job_id", type=int)

    resume = sub.add_parser("resume", help="Resume a scope halted by an authorization failure")
    resume.add_argument("scope")

    return parser


def build_config(args: argparse.Namespace) -> EngineConfig:
    config = EngineConfig.from_env()
    if args.db:
        config.db_path = Path(args.db)
        config.__post_init__()
    return config


async def _watch(orchestrator: Orchestrator, initial_crawl: bool) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    if initial_crawl:
        orchestrator.schedule_full_crawl()

    ingestor = ChangeIngestor(orchestrator)
    print("Watching for changes (Ctrl+C to stop)...")
    await asyncio.gather(
        orchestrator.run_workers(stop_event),
        ingestor.run(stop_event),
    )


def _print_jobs(orchestrator: Orchestrator, state: JobState, history: bool) -> None:
    jobs = orchestrator.store.list_by_state(state)
    if not jobs:
        print(f"No {state.value} jobs")
        return
    for job in jobs:
        line = f"#{job.job_id} {job.kind.value:<11} {job.scope_folder_id} attempts={job.attempt_count}"
        if job.last_error:
            line += f" error={job.last_error}"
        print(line)
        if history:
            for t in orchestrator.store.transitions(job.job_id):
                src = t.from_state.value if t.from_state else "-"
                print(f"    {t.at.isoformat()} {src} -> {t.to_state.value} {t.reason or ''}")


async def run_command(args: argparse.Namespace, orchestrator: Orchestrator) -> int:
    command = args.command

    if command == "crawl":
        job = await orchestrator.crawl(args.scope)
        print(f"Job {job.job_id}: {job.state.value}" + (f" ({job.last_error})" if job.last_error else ""))
        return 0 if job.state is not JobState.FAILED else 1

    if command == "watch":
        await _watch(orchestrator, initial_crawl=not args.no_initial_crawl)
        return 0

    if command == "search":
        response = orchestrator.search_service.search(SearchQuery(
            text=args.text,
            facet_filters=parse_facet_args(args.facet),
            principal=args.principal,
            page=args.page,
            page_size=args.page_size,
        ))
        if args.json:
            print(json.dumps(response.to_dict(), indent=2))
            return 0
        for hit in response.results:
            tags = ", ".join(f"{k}={v}" for k, v in sorted(hit.tags.items()))
            print(f"{hit.score:8.3f}  {hit.path}  [{tags}]")
            print(f"          {hit.source_url}")
        print(f"\n{response.total_approx} results in {response.took_ms:.1f}ms")
        return 0

    if command == "status":
        status = orchestrator.crawl_status(args.scope)
        state = status.state.value if status.state else "never crawled"
        print(f"Scope {status.scope_folder_id}: {state}, {status.asset_count} assets")
        if status.last_error:
            print(f"Last error: {status.last_error}")
        return 0

    if command == "jobs":
        _print_jobs(orchestrator, JobState(args.state), args.history)
        return 0

    if command == "cancel":
        orchestrator.cancel(args.job_id)
    elif command == "resolve":
        orchestrator.store.resolve_review(args.job_id)
    elif command == "requeue":
        orchestrator.store.requeue(args.job_id)
    elif command == "resume":
        orchestrator.store.resume_scope(args.scope)
    return 0


def main(argv=None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s"
    )

    config = build_config(args)
    connector = LocalDriveConnector(Path(args.root), config, default_principals=args.principal_default)

    async def _main() -> int:
        orchestrator = Orchestrator(connector, config)
        try:
            return await run_command(args, orchestrator)
        except KeyboardInterrupt:
            print("\nStopped.")
            return 130
        finally:
            await connector.close()
            orchestrator.close()

    try:
        return asyncio.run(_main())
    except (EngineError, KeyError, ValueError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
