"""Merge CLI: reconcile ShinyBoard data into the shiny database.

Usage:
    shinysync                          # merge all players and push
    shinysync --test                   # write merged players to a file instead
    shinysync --users Hyper,Jesse      # only these players
    shinysync --fields ivs,nature      # only these fields
"""

import argparse
import asyncio
import copy
import getpass
import logging
import os
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .config import DEFAULT_CONFIG_PATH, MergeConfig, load_config
from .localio.io import atomic_write_json, sibling_path
from .merge import merge_player_with_stats, recalc_shiny_count
from .naming import normalize_username, split_csv
from .shinyboard import FetchResult, fetch_all_users
from .store import StoreError, fetch_database, push_database, snapshot_digest

log = logging.getLogger(__name__)

MODE_TEST = "test"
MODE_UPDATE = "update"

USERNAME_ENV = "SHINYSYNC_ADMIN_USERNAME"
PASSWORD_ENV = "SHINYSYNC_ADMIN_PASSWORD"


@dataclass
class MergeOutcome:
    """Result of merging fetched data into a copy of the store."""

    database: Dict[str, Any]
    # requested user -> actual store key, for users that were merged
    processed: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)


def resolve_lookup_name(user: str, username_mapping: Mapping[str, str]) -> str:
    """Return the ShinyBoard name for a store name (unmapped names pass through)."""
    return username_mapping.get(normalize_username(user), user.strip())


def build_name_index(store: Mapping[str, Any]) -> Dict[str, str]:
    """Map normalized player names to the keys actually used in the store."""
    return {normalize_username(name): name for name in store}


def _dedupe(users: Sequence[str]) -> List[str]:
    seen: set[str] = set()
    out: List[str] = []
    for user in users:
        key = normalize_username(user)
        if key and key not in seen:
            seen.add(key)
            out.append(user.strip())
    return out


def merge_store(
    store: Mapping[str, Any],
    users: Sequence[str],
    results: Mapping[str, FetchResult],
    config: MergeConfig,
    *,
    recount: bool = False,
) -> MergeOutcome:
    """Merge every requested user into a deep copy of ``store``.

    Users with no case-insensitive match in the store are skipped.
    """
    outcome = MergeOutcome(database=copy.deepcopy(dict(store)))
    index = build_name_index(store)

    for user in users:
        actual = index.get(normalize_username(user))
        if actual is None:
            log.warning(
                "User '%s' not found in database (tried: %s)",
                user,
                normalize_username(user),
            )
            outcome.skipped.append(user)
            continue

        result = results.get(user)
        records = result.records if result else []
        merged, stats = merge_player_with_stats(
            outcome.database[actual],
            records,
            config.fields_to_merge,
            config.all_mergeable_fields,
        )
        if recount and isinstance(merged, dict):
            merged["shiny_count"] = recalc_shiny_count(merged)
        outcome.database[actual] = merged
        outcome.processed[user] = actual

        log.info(
            "%s -> %s: %d shinies, %d API entries, %d matched, %d unmatched, %d leftover",
            user,
            actual,
            stats.local,
            stats.secondary,
            stats.matched,
            stats.unmatched_local,
            stats.leftover_secondary,
        )
    return outcome


def dry_run_subset(outcome: MergeOutcome) -> Dict[str, Any]:
    """Only the players merged in this run, keyed by their store name."""
    return {
        actual: outcome.database[actual]
        for actual in outcome.processed.values()
        if actual in outcome.database
    }


def prompt_credentials(
    input_fn: Callable[[str], str] = input,
    password_fn: Callable[[str], str] = getpass.getpass,
) -> Tuple[str, str]:
    """Read admin credentials from the environment, else ask for them."""
    username = os.environ.get(USERNAME_ENV) or input_fn("Admin username: ").strip()
    password = os.environ.get(PASSWORD_ENV) or password_fn("Admin password: ")
    return username, password


def _fetch_results(users: Sequence[str], config: MergeConfig) -> Dict[str, FetchResult]:
    lookups = []
    for user in users:
        lookup = resolve_lookup_name(user, config.username_mapping)
        if normalize_username(lookup) != normalize_username(user):
            log.info("Fetching %s (mapped from '%s')", lookup, user)
        else:
            log.info("Fetching %s", lookup)
        lookups.append((user, lookup))

    results = asyncio.run(
        fetch_all_users(
            lookups,
            base_url=config.shinyboard_base_url,
            timeout_seconds=config.request_timeout_seconds,
            max_pages=config.max_pages,
        )
    )
    for user in users:
        result = results[user]
        status = "ok" if result.ok else f"partial ({result.error})"
        log.info(
            "- %-20s -> %d shinies over %d page(s), %s",
            result.lookup_name,
            len(result.records),
            result.pages,
            status,
        )
    return results


def _warn_unknown_fields(config: MergeConfig) -> None:
    unknown = [f for f in config.fields_to_merge if f not in config.all_mergeable_fields]
    if unknown:
        log.warning(
            "Fields not in all_mergeable_fields (will merge but never be stripped): %s",
            ", ".join(unknown),
        )


def _push(
    outcome: MergeOutcome,
    snapshot_hash: str,
    config: MergeConfig,
    *,
    credentials: Optional[Tuple[str, str]],
    check_conflicts: bool,
    sleep: Callable[[float], None],
) -> int:
    if credentials is None:
        credentials = prompt_credentials()
    username, password = credentials

    log.warning(
        "Pushing to the store in %g seconds; press Ctrl+C to cancel",
        config.push_delay_seconds,
    )
    try:
        sleep(config.push_delay_seconds)
    except KeyboardInterrupt:
        log.warning("Push cancelled by operator; store unchanged")
        return 130

    try:
        if check_conflicts:
            current = fetch_database(
                config.database_url,
                timeout=config.request_timeout_seconds,
                max_retries=config.max_retries,
                retry_backoff_seconds=config.retry_backoff_seconds,
            )
            if snapshot_digest(current) != snapshot_hash:
                raise StoreError(
                    "Store changed since it was read; rerun the merge "
                    "(or pass --skip-conflict-check)"
                )
        push_database(
            config.update_database_url,
            outcome.database,
            username=username,
            password=password,
            action=config.push_action,
            timeout=config.request_timeout_seconds,
        )
    except StoreError as exc:
        log.error("Error updating store: %s", exc)
        try:
            recovery = atomic_write_json(
                sibling_path(config.output_path, ".unpushed"), outcome.database
            )
        except OSError as write_exc:
            log.error("Could not keep merged database: %s", write_exc)
        else:
            log.error("Merged database kept in %s", recovery)
        return 1

    log.info("Store updated successfully")
    return 0


def run_merge(
    config: MergeConfig,
    users: Optional[Sequence[str]] = None,
    *,
    mode: str = MODE_UPDATE,
    credentials: Optional[Tuple[str, str]] = None,
    recount: bool = False,
    check_conflicts: bool = True,
    fetch_results: Callable[[Sequence[str], MergeConfig], Dict[str, FetchResult]] = _fetch_results,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Run a full merge. Returns 0 on success, 1 on failure."""
    log.info("Fetching database from %s", config.database_url)
    try:
        store = fetch_database(
            config.database_url,
            timeout=config.request_timeout_seconds,
            max_retries=config.max_retries,
            retry_backoff_seconds=config.retry_backoff_seconds,
        )
    except StoreError as exc:
        log.error("Error fetching database: %s", exc)
        return 1
    snapshot_hash = snapshot_digest(store)
    log.info("Database loaded (%d users)", len(store))

    if users:
        users = _dedupe(users)
        log.info("Processing configured users: %s", ", ".join(users))
    else:
        users = list(store.keys())
        log.info("Using all %d users from database", len(users))
    log.info("Fields to merge: %s", ", ".join(config.fields_to_merge))
    log.info("Mode: %s", "TEST (output to file)" if mode == MODE_TEST else "UPDATE (real database)")
    _warn_unknown_fields(config)

    results = fetch_results(users, config)
    outcome = merge_store(store, users, results, config, recount=recount)

    if mode == MODE_TEST:
        try:
            path = atomic_write_json(config.output_path, dry_run_subset(outcome))
        except OSError as exc:
            log.error("Error writing %s: %s", config.output_path, exc)
            status = 1
        else:
            log.info("Data written to %s", path)
            status = 0
    else:
        log.info(
            "%d users merged; %d other users unchanged",
            len(outcome.processed),
            len(store) - len(outcome.processed),
        )
        status = _push(
            outcome,
            snapshot_hash,
            config,
            credentials=credentials,
            check_conflicts=check_conflicts,
            sleep=sleep,
        )

    failed_fetches = sum(1 for r in results.values() if not r.ok)
    log.info(
        "Summary: processed=%d, skipped=%d, fetch_errors=%d",
        len(outcome.processed),
        len(outcome.skipped),
        failed_fetches,
    )
    return status


def build_arg_parser() -> argparse.ArgumentParser:
    """Build and return the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="shinysync",
        description="Merge ShinyBoard data into the shiny database.",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--test",
        dest="mode",
        action="store_const",
        const=MODE_TEST,
        help="write merged players to a file instead of pushing",
    )
    mode.add_argument(
        "--update",
        dest="mode",
        action="store_const",
        const=MODE_UPDATE,
        help="push the merged database to the store (default)",
    )
    parser.set_defaults(mode=MODE_UPDATE)
    parser.add_argument("--users", default=None, help="comma-separated player names")
    parser.add_argument("--fields", default=None, help="comma-separated fields to merge")
    parser.add_argument("--output", default=None, help="dry-run output file")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH)
    parser.add_argument("--delay", type=float, default=None, help="seconds to wait before pushing")
    parser.add_argument(
        "--recount",
        action="store_true",
        help="recalculate shiny_count for merged players",
    )
    parser.add_argument(
        "--skip-conflict-check",
        action="store_true",
        help="push even if the store changed during the run",
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point for the merge command."""
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )

    try:
        config = load_config(args.config)
    except RuntimeError as exc:
        log.error("%s", exc)
        return 1

    config = config.with_overrides(
        fields_to_merge=split_csv(args.fields),
        output_path=args.output,
        push_delay_seconds=args.delay,
    )
    return run_merge(
        config,
        split_csv(args.users),
        mode=args.mode,
        recount=args.recount,
        check_conflicts=not args.skip_conflict_check,
    )


if __name__ == "__main__":
    sys.exit(main())
