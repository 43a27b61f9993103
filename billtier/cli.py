"""
Command line entry point.

Usage:
    billtier sweep                         # one sweep with configured defaults (cron target)
    billtier sweep --batch-size 200 --archive-after-days 30
    billtier sweep --dry-run               # count candidates only
    billtier get INV-2024-000123           # print a record as JSON
    billtier load records.jsonl            # ingest JSON lines: id, timestamp, metadata, payload
    billtier stats
"""

import argparse
import asyncio
import base64
import json
import sys
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

from .config import BillTierConfig
from .engine import TieringEngine
from .errors import DuplicateRecord, InvalidRecord, RecordNotFound, TierUnavailable

EXIT_OK = 0
EXIT_NOT_FOUND = 1
EXIT_TIER_UNAVAILABLE = 2
EXIT_INVALID_INPUT = 3
EXIT_DUPLICATE_RECORD = 4


def parse_record_line(line: str) -> Dict[str, Any]:
    """One JSON object per line; payload is UTF-8 text, or base64 under payload_b64."""
    data = json.loads(line)
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    if "payload_b64" in data:
        encoded = data["payload_b64"]
        if not isinstance(encoded, str):
            raise ValueError("payload_b64 must be a base64 string")
        payload = base64.b64decode(encoded, validate=True)
    else:
        text = data["payload"]
        if not isinstance(text, str):
            raise ValueError(f"payload must be a string, got {type(text).__name__}")
        payload = text.encode("utf-8")
    return {
        "id": data["id"],
        "timestamp": datetime.fromisoformat(data["timestamp"]),
        "metadata": data.get("metadata", {}),
        "payload": payload,
    }


def iter_record_file(path: str) -> Iterator[Dict[str, Any]]:
    with open(path, "r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                yield parse_record_line(line)
            except (ValueError, KeyError, TypeError) as e:
                raise InvalidRecord(f"{path}:{line_no}: {e}") from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="billtier", description="Billing record tiering engine")
    parser.add_argument("--config", help="JSON config file merged over the defaults")
    parser.add_argument("--storage-path", help="Override storage base path")

    sub = parser.add_subparsers(dest="command", required=True)

    sweep = sub.add_parser("sweep", help="Run one archival sweep")
    sweep.add_argument("--batch-size", type=int, default=None, help="Candidates per page")
    sweep.add_argument("--archive-after-days", type=float, default=None, help="Age threshold in days")
    sweep.add_argument("--dry-run", action="store_true", help="Count candidates without archiving")

    get = sub.add_parser("get", help="Print a record")
    get.add_argument("record_id")

    load = sub.add_parser("load", help="Ingest records from a JSON lines file")
    load.add_argument("path")
    load.add_argument("--chunk-size", type=int, default=1000)

    sub.add_parser("stats", help="Print store and sweep statistics")
    return parser


async def _run(args: argparse.Namespace) -> int:
    config = BillTierConfig(args.config)
    async with TieringEngine(storage_path=args.storage_path, config=config) as engine:
        if args.command == "sweep":
            archive_after = timedelta(days=args.archive_after_days) if args.archive_after_days is not None else None
            report = await engine.run_sweep(batch_size=args.batch_size, archive_after=archive_after,
                                            dry_run=args.dry_run)
            print(json.dumps(report.to_dict(), indent=2))
            return EXIT_OK

        if args.command == "get":
            try:
                view = await engine.get_record(args.record_id)
            except RecordNotFound as e:
                print(f"error: {e}", file=sys.stderr)
                return EXIT_NOT_FOUND
            except TierUnavailable as e:
                print(f"error: {e}", file=sys.stderr)
                return EXIT_TIER_UNAVAILABLE
            print(json.dumps(view.to_dict(), indent=2))
            return EXIT_OK

        if args.command == "load":
            total = 0
            chunk: List[Dict[str, Any]] = []
            try:
                for record in iter_record_file(args.path):
                    chunk.append(record)
                    if len(chunk) >= args.chunk_size:
                        total += await engine.ingest_many(chunk)
                        chunk = []
                if chunk:
                    total += await engine.ingest_many(chunk)
            except DuplicateRecord as e:
                # Chunks before the failing one stay committed
                print(f"error: {e} ({total:,} records loaded before it)", file=sys.stderr)
                return EXIT_DUPLICATE_RECORD
            print(f"Loaded {total:,} records")
            return EXIT_OK

        stats = await engine.get_stats()
        print(json.dumps(stats, indent=2, default=str))
        return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(_run(args))
    except InvalidRecord as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_INVALID_INPUT


if __name__ == "__main__":
    sys.exit(main())
