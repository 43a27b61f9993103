#!/usr/bin/env python3
"""
BillTier Demo
Ingests synthetic billing records spread over the past year, runs archival
sweeps, and samples reads from both tiers.

Usage:
    python tiering_demo.py 1000                      # 1K records (quick test)
    python tiering_demo.py 100000                    # 100K records
    python tiering_demo.py 10000 --batch-size 250    # Custom sweep page size
    python tiering_demo.py 10000 --archive-after-days 30
    python tiering_demo.py 10000 --no-reads          # Skip read sampling
"""

import asyncio
import argparse
import json
import random
import shutil
import time
from datetime import datetime, timezone, timedelta
from pathlib import Path

import psutil

from billtier.config import BillTierConfig
from billtier.engine import TieringEngine
from billtier.errors import TierUnavailable
from billtier.logger import TierLogger, get_logger


CUSTOMERS = [f"cust_{i:05d}" for i in range(500)]
CURRENCIES = ["USD", "EUR", "GBP", "JPY"]
INGEST_CHUNK = 1000


def generate_records(start_idx: int, count: int, now: datetime, rng: random.Random) -> list:
    """Generate billing records with ages spread uniformly over the past 365 days."""
    records = []
    for i in range(start_idx, start_idx + count):
        age = timedelta(days=rng.uniform(0, 365))
        timestamp = now - age
        customer = rng.choice(CUSTOMERS)
        currency = rng.choice(CURRENCIES)
        amount_cents = rng.randint(100, 500_000)
        invoice = {
            "invoice": f"INV-{i:09d}",
            "customer": customer,
            "lines": [
                {"sku": f"SKU-{rng.randint(1, 200):04d}", "qty": rng.randint(1, 20), "amount_cents": amount_cents}
            ],
            "notes": "x" * rng.randint(0, 2000),
        }
        records.append({
            "id": f"INV-{i:09d}",
            "timestamp": timestamp,
            "metadata": {"customer": customer, "currency": currency, "amount_cents": amount_cents},
            "payload": json.dumps(invoice).encode("utf-8"),
        })
    return records


def get_memory_usage():
    """Get current system memory usage."""
    process = psutil.Process()
    memory_info = process.memory_info()
    return {
        'rss_mb': memory_info.rss / (1024 * 1024),
        'vms_mb': memory_info.vms / (1024 * 1024),
        'system_available_mb': psutil.virtual_memory().available / (1024 * 1024)
    }


async def sample_reads(engine: TieringEngine, total_records: int, samples: int, rng: random.Random):
    """Read random ids and report latency per tier."""
    print(f"\nREAD SAMPLING")
    print("-" * 25)

    latencies = {"inline": [], "archived": []}
    unavailable = 0
    for _ in range(samples):
        record_id = f"INV-{rng.randrange(total_records):09d}"
        start = time.time()
        try:
            view = await engine.get_record(record_id)
        except TierUnavailable:
            unavailable += 1
            continue
        latencies[view.location.value].append((time.time() - start) * 1000)

    for location, values in latencies.items():
        if values:
            values.sort()
            p50 = values[len(values) // 2]
            p99 = values[min(len(values) - 1, int(len(values) * 0.99))]
            print(f"  {location:8s}: {len(values):6,} reads | p50 {p50:.2f}ms | p99 {p99:.2f}ms")
    if unavailable:
        print(f"  unavailable: {unavailable:,}")


async def demo_billtier(total_records: int, batch_size: int = None, archive_after_days: float = None,
                        run_reads: bool = True, storage_dir: str = None, seed: int = 7):
    """Main BillTier demonstration function."""
    if storage_dir is None:
        storage_dir = f"./billtier_demo_{total_records // 1000}k_storage"

    storage_path = Path(storage_dir)
    if storage_path.exists():
        print(f"Cleaning previous storage: {storage_path}")
        shutil.rmtree(storage_path)
    storage_path.mkdir(parents=True, exist_ok=True)

    overrides = {"storage": {"base_path": str(storage_path)}}
    if batch_size is not None:
        overrides["migration"] = {"batch_size": batch_size}
    if archive_after_days is not None:
        overrides.setdefault("migration", {})["archive_after_days"] = archive_after_days
    config = BillTierConfig(overrides=overrides)

    TierLogger.setup(log_dir=str(config.get_logs_path()), log_level=config.logging.level, console_output=True)
    logger = get_logger("BillTierDemo")

    print("BILLTIER DEMO")
    print("=" * 50)
    print(f"Target: {total_records:,} records")
    print(f"Storage: {storage_path}")
    print(f"Logs: {TierLogger.get_log_file()}")
    print(f"Configuration:")
    print(f"   - Archive after: {config.migration.archive_after_days} days")
    print(f"   - Sweep batch: {config.migration.batch_size:,}")
    print(f"   - Workers: {config.migration.max_workers}")
    print(f"   - Sweep budget: {config.migration.sweep_budget_seconds}s")
    print()

    logger.info(f"=== Starting BillTier Demo: {total_records:,} records ===")
    rng = random.Random(seed)
    now = datetime.now(timezone.utc)

    async with TieringEngine(config=config) as engine:
        print("INGESTION PHASE")
        print("-" * 25)
        ingestion_start = time.time()
        total_ingested = 0
        while total_ingested < total_records:
            count = min(INGEST_CHUNK, total_records - total_ingested)
            total_ingested += await engine.ingest_many(generate_records(total_ingested, count, now, rng))
        ingestion_time = time.time() - ingestion_start
        throughput = total_ingested / ingestion_time if ingestion_time > 0 else 0
        memory = get_memory_usage()
        print(f"  Ingested {total_ingested:,} records in {ingestion_time:.1f}s ({throughput:,.0f} rec/s)")
        print(f"  RAM: {memory['rss_mb']:.0f}MB")

        print(f"\nSWEEP PHASE")
        print("-" * 25)
        sweep_start = time.time()
        reports = await engine.run_until_complete()
        sweep_time = time.time() - sweep_start
        for n, report in enumerate(reports, start=1):
            print(f"  Invocation {n}: scanned {report.scanned:,} | archived {report.archived:,} "
                  f"| failed {report.failed:,} | skipped {report.skipped:,} | pages {report.pages} "
                  f"| complete {report.complete}")
        print(f"  Sweep time: {sweep_time:.1f}s")

        second = await engine.run_sweep()
        print(f"  Follow-up sweep archived {second.archived:,} (expected 0)")

        stats = await engine.get_stats()
        index_stats = stats["index"]
        bulk_stats = stats["bulk"]
        total_stored = index_stats["total_records"]
        print(f"\nFINAL TIER DISTRIBUTION")
        print("-" * 35)
        print(f"  Inline:   {index_stats['inline_records']:8,} records "
              f"({index_stats['inline_records'] / total_stored * 100:5.1f}%)")
        print(f"  Archived: {index_stats['archived_records']:8,} records "
              f"({index_stats['archived_records'] / total_stored * 100:5.1f}%)")
        print(f"  Bulk objects: {bulk_stats['total_objects']:,} ({bulk_stats['storage_size_mb']:.1f}MB)")
        print(f"  Inline payload: {index_stats['inline_payload_mb']:.1f}MB")

        if run_reads:
            await sample_reads(engine, total_records, min(1000, total_records), rng)

        final_memory = get_memory_usage()
        print(f"\nMEMORY USAGE")
        print("-" * 20)
        print(f"  Process RAM: {final_memory['rss_mb']:.1f}MB")
        print(f"  System available: {final_memory['system_available_mb']:.1f}MB")

        logger.info("=== BillTier Demo Completed Successfully ===")


def main():
    """Parse arguments and run the demo."""
    parser = argparse.ArgumentParser(
        description="BillTier Demo - ingest, sweep and read billing records",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python tiering_demo.py 1000                       # Quick 1K test
  python tiering_demo.py 100000                     # 100K records
  python tiering_demo.py 10000 --batch-size 250     # Custom sweep page size
  python tiering_demo.py 10000 --no-reads           # Skip read sampling
        """
    )

    parser.add_argument("records", type=int, help="Total number of records to generate")
    parser.add_argument("--batch-size", type=int, help="Sweep page size (config default if not specified)")
    parser.add_argument("--archive-after-days", type=float, help="Age threshold in days")
    parser.add_argument("--no-reads", action="store_true", help="Skip read sampling")
    parser.add_argument("--storage", type=str, help="Custom storage directory")
    parser.add_argument("--seed", type=int, default=7, help="Random seed for generated records")

    args = parser.parse_args()

    if args.records <= 0:
        print("Error: Number of records must be positive")
        return

    if args.batch_size is not None and args.batch_size <= 0:
        print("Error: Batch size must be positive")
        return

    try:
        asyncio.run(demo_billtier(
            total_records=args.records,
            batch_size=args.batch_size,
            archive_after_days=args.archive_after_days,
            run_reads=not args.no_reads,
            storage_dir=args.storage,
            seed=args.seed,
        ))
    except KeyboardInterrupt:
        print("\nDemo interrupted by user")


if __name__ == "__main__":
    main()
