#!/usr/bin/env python3
"""
Generate a status report for the durable catalog cache.

Shows, per cache class:
- Entries still fresh (servable)
- Entries expired but kept as last-known-good data
- Entries old enough to be swept

Usage:
    cd pmr-catalog-cache
    python scripts/cache_report.py [--sweep] [--watch]

Options:
    --sweep    Remove swept-age entries after printing the report
    --watch    Continuously update the report every 30 seconds

Reads POSTGRES_URL when set, otherwise the JSON cache under CACHE_DIR.
"""

import argparse
import asyncio
import logging
import os
import sys
import time
from datetime import datetime
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv()

from pmr_catalog.services.cache import CacheClass, CacheStore, STALE_RETENTION_FACTOR
from pmr_catalog.services.stores import JsonFileStore, PostgresStore

logging.basicConfig(
    level=os.getenv('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def collect_stats(store, cache: CacheStore, now: float) -> dict:
    """Count fresh, stale and sweepable entries per cache class."""
    stats = {}
    for cache_class in CacheClass:
        ttl = cache.ttl(cache_class)
        retention = ttl * cache.stale_retention_factor
        ages = [now - ts for ts in await store.timestamps(cache_class.value)]
        stats[cache_class.value] = {
            "ttl": ttl,
            "total": len(ages),
            "fresh": sum(1 for age in ages if age < ttl),
            "stale": sum(1 for age in ages if ttl <= age < retention),
            "sweepable": sum(1 for age in ages if age >= retention),
        }
    return stats


def print_report(stats: dict, backend: str):
    """Print the status report."""
    print()
    print("=" * 60)
    print("  PMR Catalog Cache Status Report")
    print(f"  Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"  Backend:   {backend}")
    print("=" * 60)
    print()

    print(f"  {'Class':<10}{'TTL':>8}{'Total':>8}{'Fresh':>8}{'Stale':>8}{'Sweep':>8}")
    print("-" * 60)
    for name, s in stats.items():
        print(
            f"  {name:<10}{int(s['ttl']):>7}s{s['total']:>8}"
            f"{s['fresh']:>8}{s['stale']:>8}{s['sweepable']:>8}"
        )
    print()

    total = sum(s["total"] for s in stats.values())
    fresh = sum(s["fresh"] for s in stats.values())
    if total > 0:
        print(f"  Fresh ratio: {fresh / total * 100:>6.1f}%")
    else:
        print("  Fresh ratio:    N/A")
    print(f"  Stale entries are kept for {STALE_RETENTION_FACTOR}x their TTL")
    print()


async def open_store():
    postgres_url = os.environ.get("POSTGRES_URL")
    if postgres_url:
        store = PostgresStore(postgres_url)
        await store.initialize()
        return store, "postgres"

    cache_path = Path(os.environ.get("CACHE_DIR", "/tmp/pmr-catalog/cache")) / "catalog_cache.json"
    if not cache_path.exists():
        print(f"ERROR: no cache file at {cache_path}")
        sys.exit(1)
    return JsonFileStore(cache_path), "json"


async def report_once(store, backend: str, sweep: bool):
    cache = CacheStore(store)
    stats = await collect_stats(store, cache, time.time())
    print_report(stats, backend)

    if sweep:
        removed = await cache.sweep_expired()
        print(f"  Swept {removed} entries")
        print()


async def main():
    parser = argparse.ArgumentParser(
        description="Generate catalog cache status report"
    )
    parser.add_argument(
        "--sweep",
        action="store_true",
        help="Remove entries older than their retention window"
    )
    parser.add_argument(
        "--watch",
        action="store_true",
        help="Continuously update the report"
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=30,
        help="Update interval in seconds (default: 30)"
    )
    args = parser.parse_args()

    store, backend = await open_store()

    try:
        if args.watch:
            print("Watching catalog cache (Ctrl+C to stop)...")
            try:
                while True:
                    # Clear screen
                    print("\033[2J\033[H", end="")
                    if backend == "json":
                        # Pick up writes made by the API process
                        store = JsonFileStore(store.path)
                    await report_once(store, backend, args.sweep)
                    print(f"(Refreshing every {args.interval} seconds, Ctrl+C to stop)")
                    await asyncio.sleep(args.interval)
            except KeyboardInterrupt:
                print("\nStopped watching.")
        else:
            await report_once(store, backend, args.sweep)
    finally:
        if isinstance(store, PostgresStore):
            await store.close()


if __name__ == "__main__":
    asyncio.run(main())
