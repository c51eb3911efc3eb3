import argparse
import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from .batch import FAILED, PARTIAL, BatchItem, MigrationBatch
from .covers import FileCoverStore
from .errors import ConfigError
from .files import read_manga_ids, write_report
from .migrate import MigrationStateTransfer
from .models import MigrationFlag, Work
from .search import DEFAULT_THRESHOLD, CandidateSearchEngine
from .suwayomi import SuwayomiClient, SuwayomiLibrary, find_sources

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def setup_logging(level: str = "WARNING") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.WARNING), format=LOG_FORMAT)


def _split(text: Optional[str]) -> List[str]:
    return [s.strip() for s in (text or "").split(",") if s.strip()]


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Migrate Suwayomi library entries to equivalent entries on other sources.")
    p.add_argument("input_file", type=Path, nargs="?", help="Optional file with Suwayomi manga ids or manga URLs (txt/csv/xlsx/json)")
    p.add_argument("--base-url", help="Suwayomi base URL, e.g. http://localhost:4567 (or env SUWAYOMI_BASE_URL)")
    p.add_argument("--auth-mode", choices=["auto", "basic", "simple", "bearer"], default="auto")
    p.add_argument("--username", help="Username for BASIC or SIMPLE login (or env SUWAYOMI_USERNAME)")
    p.add_argument("--password", help="Password for BASIC or SIMPLE login (or env SUWAYOMI_PASSWORD)")
    p.add_argument("--token", help="Bearer token (or env SUWAYOMI_TOKEN)")
    p.add_argument("--insecure", action="store_true", help="Disable TLS certificate verification")
    p.add_argument("--request-timeout", type=float, default=12.0, help="Default HTTP request timeout in seconds (default 12)")
    p.add_argument("--list-sources", action="store_true", help="List installed Suwayomi sources (id + name) and exit")
    # Selection
    p.add_argument("--manga-id", type=int, action="append", dest="manga_ids", help="Repeatable. Suwayomi manga id to migrate")
    p.add_argument("--migrate-library", action="store_true", help="Migrate every entry of the Suwayomi library")
    p.add_argument("--filter-title", help="Only process entries whose title contains this substring (case-insensitive)")
    # Search
    p.add_argument("--target-sources", help="Comma-separated source ids or name fragments in priority order (e.g. 'mangasee,comick')")
    p.add_argument("--exclude-sources", default="", help="Comma-separated source name fragments to always exclude")
    p.add_argument("--deep-search", action="store_true", help="Normalize titles and try several sub-queries per source")
    p.add_argument("--prioritize-by-chapters", action="store_true", help="Search all target sources and keep the match with the highest latest chapter")
    p.add_argument("--hide-unmatched", action="store_true", help="Leave entries without a match out of the results")
    p.add_argument("--hide-without-updates", action="store_true", help="Leave out entries whose match has no newer chapters")
    p.add_argument("--title-threshold", type=float, default=DEFAULT_THRESHOLD, help=f"Minimum title similarity (0..1) for a candidate (default {DEFAULT_THRESHOLD})")
    p.add_argument("--extra-query", help="Extra text appended to every search query")
    p.add_argument("--no-sole-result-shortcut", action="store_true", help="Score a lone regular-search result against the threshold instead of accepting it as is")
    # Migration
    p.add_argument("--flags", help="Comma list of: chapter,custom-cover,notes,remove-download (default: every applicable flag per entry)")
    p.add_argument("--copy", action="store_true", help="Keep the original entry in the library (copy instead of replace)")
    p.add_argument("--covers-dir", type=Path, help="Directory holding custom covers named by manga id (or env REHOME_COVERS_DIR, default ./covers)")
    p.add_argument("--dry-run", action="store_true", help="Search only, do not modify the library")
    p.add_argument("--report", type=Path, help="Write per-entry results to this .json/.csv/.xlsx file")
    p.add_argument("--no-progress", action="store_true", help="Disable per-item progress output")
    p.add_argument("--log-level", default="WARNING", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return p


def _check_config(args: argparse.Namespace) -> Dict[str, Any]:
    base_url = args.base_url or os.environ.get("SUWAYOMI_BASE_URL")
    if not base_url:
        raise ConfigError("Suwayomi base URL required (flag --base-url or env SUWAYOMI_BASE_URL)")
    if not 0.0 <= args.title_threshold <= 1.0:
        raise ConfigError("--title-threshold must be between 0 and 1", {"value": args.title_threshold})
    try:
        flags = MigrationFlag.parse(args.flags) if args.flags else None
    except ValueError as e:
        raise ConfigError(str(e), {"flags": args.flags})
    if not args.list_sources:
        if not _split(args.target_sources):
            raise ConfigError("--target-sources is required")
        if not (args.input_file or args.manga_ids or args.migrate_library):
            raise ConfigError("Nothing selected: pass an input file, --manga-id or --migrate-library")
    return {
        "base_url": base_url,
        "flags": flags,
        "covers_dir": args.covers_dir or Path(os.environ.get("REHOME_COVERS_DIR", "covers")),
    }


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    try:
        conf = _check_config(args)
    except ConfigError as e:
        print(f"Configuration error: {e}")
        return 2

    client = SuwayomiClient(
        base_url=conf["base_url"],
        auth_mode=args.auth_mode,
        username=args.username or os.environ.get("SUWAYOMI_USERNAME"),
        password=args.password or os.environ.get("SUWAYOMI_PASSWORD"),
        token=args.token or os.environ.get("SUWAYOMI_TOKEN"),
        verify_tls=not args.insecure,
        request_timeout=args.request_timeout,
    )
    try:
        client._auth()
        sources = client.get_sources()
    except (RuntimeError, requests.RequestException) as e:
        print(f"Could not reach Suwayomi at {conf['base_url']}: {e}")
        return 2

    if args.list_sources:
        for s in sources:
            print(f"{s.get('id')}\t{s.get('name') or s.get('apkName')}\t{s.get('lang', '')}")
        return 0

    targets = find_sources(sources, _split(args.target_sources), _split(args.exclude_sources))
    if not targets:
        print(f"No installed source matches --target-sources '{args.target_sources}'. Use --list-sources to see them.")
        return 2
    print("Target sources: " + ", ".join(f"{t.get('name')} ({t.get('id')})" for t in targets))

    ids: List[int] = []
    if args.input_file:
        try:
            ids = read_manga_ids(args.input_file)
        except (OSError, ValueError) as e:
            print(f"Could not read input file {args.input_file}: {e}")
            return 2
    ids.extend(args.manga_ids or [])

    library = SuwayomiLibrary(client, sources)
    return asyncio.run(run(args, library, ids, [int(t["id"]) for t in targets], conf))


async def _load_works(args: argparse.Namespace, library: SuwayomiLibrary, ids: List[int]) -> List[Work]:
    if args.migrate_library:
        entries = await asyncio.to_thread(library.client.get_library)
        ids = ids + [mid for mid in (SuwayomiClient.extract_manga_id(e) for e in entries) if mid is not None]
    works: List[Work] = []
    for mid in dict.fromkeys(ids):
        work = await library.load_work(mid)
        if work is None:
            print(f"SKIP manga {mid} (not found on server)")
            continue
        if args.filter_title and args.filter_title.lower() not in work.title.lower():
            continue
        works.append(work)
    logger.info("Loaded %d of %d requested entries", len(works), len(ids))
    return works


def _print_match(idx: int, total: int, item: BatchItem) -> None:
    if item.match is None:
        print(f"[{idx}/{total}] SKIP '{item.work.title}' (no match)")
    else:
        print(
            f"[{idx}/{total}] MATCH '{item.work.title}' -> '{item.match.title}' "
            f"(source {item.source_id}, score {item.score:.2f}, chapters {item.match_chapter_count})"
        )


def _print_migrated(idx: int, total: int, item: BatchItem) -> None:
    if item.status in (FAILED, PARTIAL):
        why = item.error or ", ".join(item.report.failed_steps if item.report else [])
        print(f"[{idx}/{total}] FAIL '{item.work.title}' ({why})")
    else:
        print(f"[{idx}/{total}] OK '{item.work.title}' -> '{item.match.title}'")


async def run(args: argparse.Namespace, library: SuwayomiLibrary, ids: List[int], target_ids: List[int], conf: Dict[str, Any]) -> int:
    works = await _load_works(args, library, ids)
    if not works:
        print("No manga to process.")
        return 1

    engine = CandidateSearchEngine(
        extra_query=args.extra_query,
        threshold=args.title_threshold,
        sole_result_shortcut=not args.no_sole_result_shortcut,
    )
    transfer = MigrationStateTransfer.for_library(library, FileCoverStore(conf["covers_dir"]))
    batch = MigrationBatch(
        engine,
        transfer,
        resolver=library.resolver,
        chapters=library.chapters,
        chapter_source=library.chapter_source,
        search_for=library.searcher,
        deep_search=args.deep_search,
        prioritize_by_chapters=args.prioritize_by_chapters,
        hide_unmatched=args.hide_unmatched,
        hide_without_updates=args.hide_without_updates,
    )

    items = await batch.find_matches(works, target_ids, progress=None if args.no_progress else _print_match)
    matched = sum(1 for i in items if i.match is not None)
    print(f"Matched {matched}/{len(works)} entries")

    if not args.dry_run and matched:
        await batch.migrate_all(items, replace=not args.copy, flags=conf["flags"], progress=None if args.no_progress else _print_migrated)

    if args.report:
        print(f"Report written to {write_report(items, args.report)}")

    if not matched:
        return 1
    failed = [i for i in items if i.status in (FAILED, PARTIAL)]
    if failed:
        print(f"{len(failed)} migration(s) failed")
        return 3
    return 0
