"""CLI for the production log: backup, restore, cleanup, sync and reports."""

from __future__ import annotations

import argparse
import json
import logging
import time
from datetime import date

from errors import SnapshotImportError
from local_cache import LocalCache
from reconciler import Reconciler
from remote_store import SupabaseRemoteStore, is_connected
from reports import breakdown_summary, daily_summary, day_report_frame, efficiency_loss_by_type, write_day_csv
from shared import CACHE_FILE, LOG_LEVEL, MACHINE_TYPES

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Production log sync + report CLI")
    p.add_argument("--cache", default=CACHE_FILE, help="Local cache file")
    p.add_argument("--local-only", action="store_true", help="Do not contact the remote store")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show sync status and cached entry count")

    backup = sub.add_parser("backup", help="Write the local dataset to a JSON file")
    backup.add_argument("--out", help="Output path (default Backup_<today>.json)")

    restore = sub.add_parser("restore", help="Replace local and remote data with a backup file")
    restore.add_argument("--file", required=True)
    restore.add_argument("--yes", action="store_true", help="Confirm the overwrite")

    clear = sub.add_parser("clear", help="Delete IM and BM day records in a date range")
    clear.add_argument("--start", required=True, help="YYYY-MM-DD")
    clear.add_argument("--end", required=True, help="YYYY-MM-DD")

    sub.add_parser("resync", help="Push the whole local dataset to the remote store")

    watch = sub.add_parser("watch", help="Subscribe and poll for remote changes")
    watch.add_argument("--interval", type=float, default=5.0, help="Seconds between polls")
    watch.add_argument("--cycles", type=int, default=0, help="Stop after N polls (0 = forever)")

    report = sub.add_parser("report", help="Print or write the day report")
    report.add_argument("--date", required=True)
    report.add_argument("--type", choices=MACHINE_TYPES, default="IM")
    report.add_argument("--out-dir", help="Write Production_Report_<date>_<type>.csv here")

    summary = sub.add_parser("summary", help="Daily summary and breakdown list for a date")
    summary.add_argument("--date", required=True)
    return p


def build_reconciler(cache_path: str, local_only: bool = False) -> Reconciler:
    remote = None
    if not local_only and is_connected():
        remote = SupabaseRemoteStore()
    elif not local_only:
        logger.info("Supabase not configured, running local-only")
    return Reconciler(LocalCache(cache_path), remote)


def main(argv: list[str] | None = None) -> None:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    rec = build_reconciler(args.cache, args.local_only)

    if args.command == "status":
        rec.start()
        result = {"status": rec.status().to_dict(), "entries": sorted(rec.entries)}
    elif args.command == "backup":
        out = args.out or f"Backup_{date.today().isoformat()}.json"
        with open(out, "w", encoding="utf-8") as f:
            json.dump(rec.export_snapshot(), f, indent=2, sort_keys=True)
        result = {"backup": out, "entries": len(rec.entries)}
    elif args.command == "restore":
        if not args.yes:
            raise SystemExit("restore overwrites local and cloud data; pass --yes to confirm")
        try:
            with open(args.file, "r", encoding="utf-8") as f:
                snapshot = json.load(f)
        except (OSError, ValueError) as exc:
            raise SystemExit(f"Invalid backup file: {exc}")
        rec.start()
        try:
            rec.import_snapshot(snapshot)
        except SnapshotImportError as exc:
            raise SystemExit(str(exc))
        result = {"restored": len(rec.entries), "status": rec.status().to_dict()}
    elif args.command == "clear":
        rec.start()
        removed = rec.clear_range(args.start, args.end)
        result = {"removed": removed, "status": rec.status().to_dict()}
    elif args.command == "resync":
        rec.start()
        rec.resync()
        result = {"status": rec.status().to_dict()}
    elif args.command == "watch":
        rec.start()
        cycles = 0
        while args.cycles == 0 or cycles < args.cycles:
            time.sleep(args.interval)
            delivered = rec.poll()
            cycles += 1
            if delivered:
                print(json.dumps(rec.status().to_dict(), default=str))
        result = {"status": rec.status().to_dict(), "polls": cycles}
    elif args.command == "report":
        day = rec.day_record(args.date, args.type)
        if args.out_dir:
            result = {"csv": write_day_csv(day, args.out_dir), "rows": len(day.rows)}
        else:
            result = {"rows": day_report_frame(day).to_dict(orient="records")}
    else:
        entries = rec.entries
        result = {
            "summary": daily_summary(entries, args.date),
            "efficiency_loss_kg": efficiency_loss_by_type(entries, args.date),
            "breakdowns": breakdown_summary(entries, args.date).to_dict(orient="records"),
        }

    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    main()
