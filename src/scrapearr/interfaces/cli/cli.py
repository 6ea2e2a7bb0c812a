from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import structlog

from scrapearr.domain.entities.pairing import ChangeState, PendingChange
from scrapearr.domain.entities.streams import (
    AggregationOutcome,
    AggregationQuery,
    SourceStatus,
    StreamResult,
)
from scrapearr.domain.exceptions import ScrapearrError
from scrapearr.infrastructure.config import AppConfig, load_config
from scrapearr.infrastructure.logging.setup import configure_logging
from scrapearr.infrastructure.network import UdpLanAddressProvider
from scrapearr.interfaces.composition import Services, build_services
from scrapearr.interfaces.pairing.server import PairingServer

log = structlog.get_logger(__name__)


def _parse_args(argv: Iterable[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="scrapearr")

    # Config wiring flags (no business logic)
    parser.add_argument("--config", default=None, help="Path to YAML config file.")
    parser.add_argument("--dotenv", default=None, help="Path to .env file.")
    parser.add_argument(
        "--cache-dir", default=None, help="Override the state/cache directory."
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level.",
    )
    parser.add_argument(
        "--log-format",
        default=None,
        choices=["json", "console"],
        help="Override log format.",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    # repo
    repo = commands.add_parser("repo", help="Manage scraper repositories.")
    repo_cmds = repo.add_subparsers(dest="action", required=True)
    repo_add = repo_cmds.add_parser("add", help="Install a repository by URL.")
    repo_add.add_argument("url")
    repo_cmds.add_parser("list", help="List installed repositories.")
    repo_refresh = repo_cmds.add_parser("refresh", help="Re-fetch a repository.")
    repo_refresh.add_argument("repository_id")
    repo_remove = repo_cmds.add_parser("remove", help="Uninstall a repository.")
    repo_remove.add_argument("repository_id")

    # scraper
    scraper = commands.add_parser("scraper", help="Inspect and toggle scrapers.")
    scraper_cmds = scraper.add_subparsers(dest="action", required=True)
    scraper_list = scraper_cmds.add_parser("list", help="List installed scrapers.")
    scraper_list.add_argument("--repo", default=None, help="Only this repository.")
    for name in ("enable", "disable"):
        toggle = scraper_cmds.add_parser(name, help=f"{name.capitalize()} a scraper.")
        toggle.add_argument("scraper_id")
    scraper_test = scraper_cmds.add_parser("test", help="Run one scraper directly.")
    scraper_test.add_argument("scraper_id")
    scraper_test.add_argument(
        "--type", dest="content_type", choices=["movie", "series"]
    )
    scraper_test.add_argument("--id", dest="external_id", default=None)
    scraper_test.add_argument("--season", type=int, default=None)
    scraper_test.add_argument("--episode", type=int, default=None)

    # plugins
    plugins = commands.add_parser("plugins", help="Toggle all scrapers at once.")
    plugins.add_argument("state", choices=["on", "off"])

    # streams
    streams = commands.add_parser("streams", help="Query all enabled scrapers.")
    streams.add_argument("content_type", choices=["movie", "series"])
    streams.add_argument("external_id")
    streams.add_argument("--season", type=int, default=None)
    streams.add_argument("--episode", type=int, default=None)
    streams.add_argument("--json", action="store_true", help="Print JSON.")

    # pair
    pair = commands.add_parser("pair", help="Accept repository lists from a device.")
    pair.add_argument(
        "--yes", action="store_true", help="Confirm proposals without asking."
    )

    return parser.parse_args(argv)


def _print_err(message: str) -> None:
    print(message, file=sys.stderr)


def _format_stream(index: int, stream: StreamResult) -> str:
    quality = f"[{stream.quality_tag}] " if stream.quality_tag else ""
    kind = "magnet" if stream.is_torrent else "url"
    return (
        f"{index:>3}. {quality}{stream.title} | {stream.source_name}"
        f" | {kind}: {stream.target}"
    )


def _stream_to_dict(stream: StreamResult) -> dict[str, Any]:
    return {
        "source": stream.source_name,
        "title": stream.title,
        "name": stream.name,
        "quality": stream.quality_tag,
        "url": stream.url,
        "magnet": stream.magnet,
        "external": stream.is_external,
        "headers": dict(stream.extra_headers),
        "size": stream.size,
        "language": stream.language,
    }


def _outcome_to_dict(outcome: AggregationOutcome) -> dict[str, Any]:
    return {
        "complete": outcome.complete,
        "sources": [
            {
                "id": s.source_id,
                "name": s.source_name,
                "status": s.status.value,
                "failure": s.failure.value if s.failure else None,
                "skip_reason": s.skip_reason.value if s.skip_reason else None,
                "results": len(s.results),
                "message": s.message,
            }
            for s in outcome.sources
        ],
        "streams": [_stream_to_dict(s) for s in outcome.merged],
        "enrichment": (
            {"title": outcome.enrichment.title, "year": outcome.enrichment.year}
            if outcome.enrichment is not None
            else None
        ),
    }


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _repo(args: argparse.Namespace, services: Services) -> int:
    if args.action == "add":
        repo = await services.manager.add_repository(args.url)
        print(f"Installed '{repo.name}' ({repo.id}) with {repo.scraper_count} scrapers")
    elif args.action == "list":
        repos = services.store.list_repositories()
        if not repos:
            print("No repositories installed")
        for r in repos:
            print(f"{r.id}  {r.name}  ({r.scraper_count} scrapers)  {r.url}")
    elif args.action == "refresh":
        await services.manager.refresh_repository(args.repository_id)
        repo = services.store.get_repository(args.repository_id)
        print(f"Refreshed '{repo.name}' ({repo.scraper_count} scrapers)")
    elif args.action == "remove":
        repo = await services.manager.remove_repository(args.repository_id)
        print(f"Removed '{repo.name}'")
    return 0


async def _scraper(args: argparse.Namespace, services: Services) -> int:
    if args.action == "list":
        snapshot = services.store.snapshot()
        scrapers = (
            snapshot.scrapers_of(args.repo) if args.repo else list(snapshot.scrapers)
        )
        if not snapshot.global_enabled:
            print("(plugins are globally disabled)")
        for s in scrapers:
            flag = "on " if s.enabled else "off"
            types = ",".join(s.capabilities.supported_types) or "any"
            print(f"[{flag}] {s.id}  {s.name}  types={types}")
    elif args.action in ("enable", "disable"):
        enabled = args.action == "enable"
        await services.store.set_scraper_enabled(args.scraper_id, enabled)
        print(f"{args.scraper_id} {'enabled' if enabled else 'disabled'}")
    elif args.action == "test":
        sample: AggregationQuery | None = None
        if args.content_type or args.external_id:
            sample = AggregationQuery(
                content_type=args.content_type or "movie",
                external_id=args.external_id or "603",
                season=args.season,
                episode=args.episode,
            )
        results = await services.manager.test_scraper(args.scraper_id, sample)
        print(f"{len(results)} result(s)")
        for i, stream in enumerate(results, start=1):
            print(_format_stream(i, stream))
    return 0


async def _plugins(args: argparse.Namespace, services: Services) -> int:
    enabled = args.state == "on"
    await services.store.set_plugins_globally_enabled(enabled)
    print(f"Plugins {'enabled' if enabled else 'disabled'}")
    return 0


async def _streams(args: argparse.Namespace, services: Services) -> int:
    query = AggregationQuery(
        content_type=args.content_type,
        external_id=args.external_id,
        season=args.season,
        episode=args.episode,
    )
    final: AggregationOutcome | None = None
    async for outcome in services.aggregator.query(query):
        final = outcome
        if not args.json and not outcome.complete:
            done = len(outcome.sources) - len(outcome.pending)
            _print_err(f"... {done}/{len(outcome.sources)} sources finished")

    if final is None:
        _print_err("error: aggregation produced no outcome")
        return 1
    if args.json:
        print(json.dumps(_outcome_to_dict(final), indent=2))
        return 0

    if final.enrichment is not None:
        year = f" ({final.enrichment.year})" if final.enrichment.year else ""
        print(f"{final.enrichment.title}{year}")
    for source in final.sources:
        if source.status is SourceStatus.SUCCEEDED:
            detail = f"{len(source.results)} result(s)"
        elif source.status is SourceStatus.FAILED:
            detail = f"failed: {source.failure.value if source.failure else '?'}"
            if source.message:
                detail += f" ({source.message})"
        else:
            reason = source.skip_reason.value if source.skip_reason else "?"
            detail = f"skipped: {reason}"
        print(f"  {source.source_name}: {detail}")
    print(f"{len(final.merged)} stream(s)")
    for i, stream in enumerate(final.merged, start=1):
        print(_format_stream(i, stream))
    return 0


async def _pair(args: argparse.Namespace, services: Services, log_config: Any) -> int:
    proposals: asyncio.Queue[PendingChange] = asyncio.Queue()

    server = await PairingServer.start_or_raise(
        config=services.config.pairing,
        current_repositories=services.repository_infos,
        manifest_fetcher=services.manager.fetch_repository_info,
        apply_change=services.manager.apply_diff,
        on_change_proposed=proposals.put_nowait,
        logo_provider=services.read_logo,
        lan_address_provider=UdpLanAddressProvider(),
        log_config=log_config,
    )
    print(f"Pairing server running at {server.pairing_url}")
    print("Open it on the other device and submit a repository list. Ctrl-C to stop.")

    try:
        while True:
            change = await proposals.get()
            if server.coordinator.status(change.change_id) is not ChangeState.PROPOSED:
                continue  # superseded or expired while queued
            print(f"\nProposal {change.change_id} from {change.proposer or 'unknown'}")
            for url in change.diff.added:
                print(f"  + {url}")
            for url in change.diff.removed:
                print(f"  - {url}")
            if change.diff.is_empty:
                print("  (no changes)")

            if args.yes:
                answer = "y"
            else:
                try:
                    answer = await asyncio.to_thread(
                        input, "Apply these changes? [y/N] "
                    )
                except EOFError:
                    answer = "n"

            if answer.strip().lower() in ("y", "yes"):
                result = await server.confirm_change(change.change_id)
                state = result.state.value if result else "unknown"
            else:
                result = await server.reject_change(change.change_id)
                state = result.state.value if result else "unknown"
            print(f"Change {change.change_id}: {state}")
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    finally:
        await server.stop()
    return 0


async def _run(args: argparse.Namespace, config: AppConfig, log_config: Any) -> int:
    log.debug("cli_command", command=args.command, action=getattr(args, "action", None))
    async with build_services(config) as services:
        try:
            if args.command == "repo":
                return await _repo(args, services)
            if args.command == "scraper":
                return await _scraper(args, services)
            if args.command == "plugins":
                return await _plugins(args, services)
            if args.command == "streams":
                return await _streams(args, services)
            if args.command == "pair":
                return await _pair(args, services, log_config)
        except ScrapearrError as e:
            _print_err(f"error: {e.kind.value}: {e.message}")
            return 1
    return 2


def start(argv: Iterable[str] | None = None) -> int:
    """
    Process entrypoint.

    Loads config exactly once, configures logging, then runs one command.
    """
    if argv is None:
        argv = sys.argv[1:]

    args = _parse_args(argv)

    config_path = Path(args.config) if args.config else None
    dotenv_path = Path(args.dotenv) if args.dotenv else None

    cli_overrides: dict[str, Any] = {}
    if args.cache_dir:
        cli_overrides["cache_dir"] = args.cache_dir
    if args.log_level:
        cli_overrides["log_level"] = args.log_level
    if args.log_format:
        cli_overrides["log_format"] = args.log_format

    config = load_config(
        config_path=config_path,
        dotenv_path=dotenv_path,
        cli_overrides=cli_overrides,
    )

    log_config = configure_logging(config)

    try:
        return asyncio.run(_run(args, config, log_config))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(start())
