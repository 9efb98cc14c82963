#!/usr/bin/env python3
"""Command-line access to the correction store.

  correction-store sync
  correction-store list
  correction-store show story/chapter-01.md --depth 1 --type remote
  correction-store migrate stored-metadata.json
  correction-store add-word Mittelerde
  correction-store run --passes 1

Settings come from the environment (and `.env`); see `StoreConfig.from_env`.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, List, Optional, Tuple

from correction_store.config import StoreConfig
from correction_store.errors import CorrectionStoreError
from correction_store.object_store import GitObjectStore, Signature
from correction_store.repository import COMMON_PARENT, LOCAL, REMOTE, CommitSpec, CorrectionRepository
from correction_store.schema_migration import migrate_record
from correction_store.sync import CorrectionSync
from correction_store.worker import CorrectionLoop, StoreState


logger = logging.getLogger("correction_store")


def build_components(config: StoreConfig) -> Tuple[GitObjectStore, CorrectionRepository, CorrectionSync]:
    store = GitObjectStore(
        config.repo_dir,
        remote=config.remote,
        network_timeout=config.network_timeout_seconds,
    )
    repository = CorrectionRepository(
        store,
        branch=config.branch,
        dictionary_path=config.dictionary_path,
        author=Signature(config.author_name, config.author_email),
    )
    sync = CorrectionSync(store, repository, remote_url=config.remote_url)
    return store, repository, sync


def _print_json(value: Any) -> None:
    print(json.dumps(value, indent=2, sort_keys=True, ensure_ascii=False))


def _cmd_sync(args: argparse.Namespace, config: StoreConfig) -> int:
    _, _, sync = build_components(config)
    report = sync.update_repo()
    _print_json(asdict(report))
    return 0 if report.ok else 1


def _cmd_list(args: argparse.Namespace, config: StoreConfig) -> int:
    _, repository, _ = build_components(config)
    _print_json(repository.list_files(args.filter or config.path_pattern))
    return 0


def _cmd_show(args: argparse.Namespace, config: StoreConfig) -> int:
    _, repository, _ = build_components(config)
    record = repository.get_correction(
        path=args.path,
        ref_type=args.type,
        depth=args.depth,
        apply_dictionary=not args.raw,
    )
    _print_json(record)
    return 0


def _cmd_migrate(args: argparse.Namespace, config: StoreConfig) -> int:
    with Path(args.file).open("r", encoding="utf-8") as f:
        document = json.load(f)
    result = migrate_record(document)
    logger.info("%s: %s record", args.file, result.kind.value)
    _print_json(result.record)
    return 0


def _cmd_add_word(args: argparse.Namespace, config: StoreConfig) -> int:
    _, repository, _ = build_components(config)
    spec = CommitSpec(message=args.message) if args.message else None
    commit = repository.add_word_to_dictionary(args.word, spec)
    if commit is None:
        logger.info("%s is already in the dictionary", args.word)
    else:
        logger.info("Added %s in %s", args.word, commit)
    return 0


def _cmd_run(args: argparse.Namespace, config: StoreConfig) -> int:
    _, repository, sync = build_components(config)
    loop = CorrectionLoop(repository, sync, phases=[], config=config, state=StoreState())
    loop.run(max_passes=args.passes)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="correction-store", description=__doc__.splitlines()[0])
    parser.add_argument("--env-file", help="Load settings from this .env file.")
    parser.add_argument("--log-level", help="Override LOG_LEVEL.")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("sync", help="Pull the branch and reconcile correction refs.").set_defaults(
        handler=_cmd_sync
    )

    list_cmd = commands.add_parser("list", help="List tracked files and their correction status.")
    list_cmd.add_argument("--filter", help="Regex overriding PATH_FILTER.")
    list_cmd.set_defaults(handler=_cmd_list)

    show = commands.add_parser("show", help="Print the correction record for a file.")
    show.add_argument("path")
    show.add_argument("--depth", type=int, default=0)
    show.add_argument("--type", choices=[LOCAL, REMOTE, COMMON_PARENT], default=LOCAL)
    show.add_argument("--raw", action="store_true", help="Skip the dictionary filter.")
    show.set_defaults(handler=_cmd_show)

    migrate = commands.add_parser("migrate", help="Print a stored record file in the current schema.")
    migrate.add_argument("file")
    migrate.set_defaults(handler=_cmd_migrate)

    add_word = commands.add_parser("add-word", help="Add a word to the dictionary.")
    add_word.add_argument("word")
    add_word.add_argument("--message", help="Commit message.")
    add_word.set_defaults(handler=_cmd_add_word)

    run = commands.add_parser("run", help="Run the background loop (sync only, no phases).")
    run.add_argument("--passes", type=int, default=None)
    run.set_defaults(handler=_cmd_run)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = StoreConfig.from_env(dotenv_path=args.env_file)
    logging.basicConfig(
        level=(args.log_level or config.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return args.handler(args, config)
    except (CorrectionStoreError, ValueError, OSError) as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
