#!/usr/bin/env python3
"""
CLI for the vector search store.

Usage:
    python -m vectordb.cli --help
    python -m vectordb.cli init
    python -m vectordb.cli count
    python -m vectordb.cli search --vector query.json -k 5 --filters filters.json --sort sort.json
    python -m vectordb.cli queue-stats

Filter files hold ``{group_key: [filter_spec, ...]}``; sort files hold a list
of sort key specs. Settings come from --config (YAML) and VECTORDB_*
environment variables.
"""

import argparse
import json
import logging
import sys
from typing import Any, Optional

from .core.config import SearchConfig
from .core.exceptions import VectorDBError
from .core.logging import configure_logging
from .query.filters import PredicateBuilder
from .query.sorting import SortSpec
from .retrieval.search import SearchOrchestrator
from .storage import create_document_repository, create_embedding_store


logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    configure_logging(level=level, stream=sys.stderr)


def load_config(args: argparse.Namespace) -> SearchConfig:
    if args.config:
        return SearchConfig.from_yaml(args.config)
    return SearchConfig.from_env()


def _read_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def cmd_init(args: argparse.Namespace) -> int:
    """Create the embeddings table (and, for SQLite, the document and queue tables)."""
    config = load_config(args)
    store = create_embedding_store(config)
    try:
        repository = create_document_repository(config)
        try:
            print(f"Initialized {config.backend} store ({config.dimensions} dimensions)")
            if config.backend == "sqlite":
                from .storage.sqlite_queue import SqliteEmbedQueue
                SqliteEmbedQueue(config.sqlite_path, table_prefix=config.table_prefix).close()
                print(f"Database: {config.sqlite_path}")
        finally:
            repository.close()
    finally:
        store.close()
    return 0


def cmd_count(args: argparse.Namespace) -> int:
    """Print the number of stored embeddings."""
    config = load_config(args)
    store = create_embedding_store(config)
    try:
        print(store.count())
    finally:
        store.close()
    return 0


def cmd_search(args: argparse.Namespace) -> int:
    """Run a search for a query vector read from a JSON file."""
    config = load_config(args)
    query_vector = _read_json(args.vector)
    predicate = PredicateBuilder.from_groups(_read_json(args.filters)) if args.filters else None
    sort = SortSpec.from_list(_read_json(args.sort)) if args.sort else None

    store = create_embedding_store(config)
    try:
        repository = create_document_repository(config)
        try:
            orchestrator = SearchOrchestrator(store, repository, config)
            result = orchestrator.search_detailed(query_vector, args.k, predicate=predicate, sort=sort)
        finally:
            repository.close()
    finally:
        store.close()

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
        return 0

    print(f"\nSearch {result.search_id}")
    print("=" * 50)
    print(f"Eligible documents: {result.eligible_documents}")
    print(f"Codes scanned:      {result.scanned}")
    print(f"Hamming survivors:  {result.stage2_count}")
    print(f"Cosine survivors:   {result.stage3_count}")
    print(f"Time:               {result.execution_ms}ms")
    print()
    if not result.hits:
        print("No results.")
    for hit in result.hits:
        print(
            f"  {hit.rank:3d}. id={hit.id:<8d} document={hit.document_id:<8d} "
            f"similarity={hit.similarity:.4f}"
        )
    return 0


def cmd_queue_stats(args: argparse.Namespace) -> int:
    """Show embed queue counts per status."""
    config = load_config(args)
    if config.backend != "sqlite":
        print("The embed queue is only available with the sqlite backend", file=sys.stderr)
        return 1

    from .storage.sqlite_queue import SqliteEmbedQueue
    queue = SqliteEmbedQueue(config.sqlite_path, table_prefix=config.table_prefix)
    try:
        stats = queue.get_stats()
    finally:
        queue.close()

    if args.json:
        print(json.dumps(stats, indent=2))
        return 0

    print("\nEmbed Queue")
    print("=" * 50)
    for status, count in stats.items():
        print(f"  {status:12s} {count}")
    return 0


def main(argv: Optional[list] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Binary-quantized vector search CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("-c", "--config", help="YAML configuration file")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # init command
    init_parser = subparsers.add_parser("init", help="Create storage tables")
    init_parser.set_defaults(func=cmd_init)

    # count command
    count_parser = subparsers.add_parser("count", help="Count stored embeddings")
    count_parser.set_defaults(func=cmd_count)

    # search command
    search_parser = subparsers.add_parser("search", help="Search for similar chunks")
    search_parser.add_argument("--vector", required=True, help="JSON file holding the query vector")
    search_parser.add_argument("-k", type=int, default=10, help="Number of results (default: 10)")
    search_parser.add_argument("--filters", help="JSON file with filter groups")
    search_parser.add_argument("--sort", help="JSON file with sort keys")
    search_parser.add_argument("--json", action="store_true", help="Output JSON")
    search_parser.set_defaults(func=cmd_search)

    # queue-stats command
    queue_parser = subparsers.add_parser("queue-stats", help="Show embed queue statistics")
    queue_parser.add_argument("--json", action="store_true", help="Output JSON")
    queue_parser.set_defaults(func=cmd_queue_stats)

    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    if not args.command:
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except VectorDBError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
