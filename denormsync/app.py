import argparse
import json
import sys
from pathlib import Path

from . import __version__
from .backfill import JOBS, run_backfill, scan_drift
from .config import Settings, load_env
from .database import SqlDocumentStore
from .errors import DenormSyncError
from .logger import get_logger, summarize_counts
from .propagation import ChangeEvent
from .scheduler import Supervisor, run_scheduled_backfill
from .schema import validate_change_event, validate_medication_event
from .state import BackfillStateStore
from .storage import export_snapshot, import_snapshot, load_snapshot, save_snapshot
from .triggers import handle_medication_write, handle_user_write, utc_now


def _open_store(args: argparse.Namespace, settings: Settings) -> SqlDocumentStore:
    return SqlDocumentStore(args.db or settings.database_url)


def _load_event(path: Path, validate) -> ChangeEvent:
    if not path.exists():
        raise SystemExit(f"Event file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    errors = validate(data)
    if errors:
        print("Invalid event:")
        for e in errors:
            print(f" - {e}")
        raise SystemExit(2)
    return ChangeEvent.from_dict(data)


def cmd_backfill(args: argparse.Namespace, settings: Settings) -> None:
    store = _open_store(args, settings)
    job = JOBS[args.job]
    if args.page_size is None and not args.dry_run:
        # No overrides: behave exactly like the scheduled run.
        report = run_scheduled_backfill(store, job, settings, Supervisor(max_retries=args.retries))
        if not report.succeeded:
            raise SystemExit(f"Backfill failed after {report.attempts} attempt(s): {report.error}")
        result = report.result
    else:
        result = run_backfill(store, job, utc_now(), page_size=args.page_size, dry_run=args.dry_run)
    print(json.dumps(result.to_dict(), indent=2, default=str))


def cmd_state(args: argparse.Namespace, settings: Settings) -> None:
    store = _open_store(args, settings)
    job = JOBS[args.job]
    state_store = BackfillStateStore(store, job.job_id, job.collections)
    if args.action == "reset":
        state_store.reset()
        print(f"Reset cursors for {job.job_id}")
        return
    state = state_store.load()
    if state.version is None:
        print(f"No persisted state for {job.job_id}")
        return
    print(json.dumps(state.data, indent=2, default=str))


def cmd_sync_user(args: argparse.Namespace, settings: Settings) -> None:
    event = _load_event(Path(args.event), validate_change_event)
    outcome = handle_user_write(_open_store(args, settings), event, settings)
    _print_outcome(outcome)


def cmd_sync_medication(args: argparse.Namespace, settings: Settings) -> None:
    event = _load_event(Path(args.event), validate_medication_event)
    outcome = handle_medication_write(_open_store(args, settings), event, settings)
    _print_outcome(outcome)


def _print_outcome(outcome) -> None:
    print(f"Status: {outcome.status}")
    if outcome.counts:
        print(f"Updated: {summarize_counts(outcome.counts)}")
    if outcome.reason:
        print(f"Reason: {outcome.reason}")
    if outcome.failed:
        raise SystemExit(1)


def cmd_drift(args: argparse.Namespace, settings: Settings) -> None:
    store = _open_store(args, settings)
    totals = scan_drift(store, JOBS[args.job], utc_now(), page_size=args.page_size)
    drifted = 0
    for collection, counts in totals.items():
        print(f"{collection}: {counts['drifted']} drifted / {counts['processed']} scanned")
        drifted += counts["drifted"]
    if drifted:
        raise SystemExit(1)


def cmd_import(args: argparse.Namespace, settings: Settings) -> None:
    input_path = Path(args.input)
    if not input_path.exists():
        raise SystemExit(f"Input file not found: {input_path}")
    counts = import_snapshot(_open_store(args, settings), load_snapshot(input_path))
    print(f"Imported: {summarize_counts(counts)}")


def cmd_export(args: argparse.Namespace, settings: Settings) -> None:
    collections = [c.strip() for c in args.collections.split(",") if c.strip()]
    snapshot = export_snapshot(_open_store(args, settings), collections)
    save_snapshot(Path(args.output), snapshot)
    print(f"Exported {len(collections)} collection(s) to {args.output}")


def main(argv=None):
    load_env()
    parser = argparse.ArgumentParser(prog="denormsync", description="Denormalized field sync and backfill")
    parser.add_argument("--version", action="store_true", help="Show version")
    parser.add_argument("--db", help="Database URL or SQLite path (default: DENORMSYNC_DATABASE_URL)")

    subparsers = parser.add_subparsers(dest="command")
    bf = subparsers.add_parser("backfill", help="Advance a backfill job by one page per collection")
    bf.add_argument("--job", choices=sorted(JOBS), default="denormalized", help="Backfill job")
    bf.add_argument("--page-size", type=int, help="Documents per collection page")
    bf.add_argument("--dry-run", action="store_true", help="Count drift without writing or saving progress")
    bf.add_argument("--retries", type=int, default=3, help="Retries for transient failures")
    bf.set_defaults(func=cmd_backfill)

    st = subparsers.add_parser("state", help="Show or reset persisted backfill progress")
    st.add_argument("action", choices=["show", "reset"])
    st.add_argument("--job", choices=sorted(JOBS), default="denormalized", help="Backfill job")
    st.set_defaults(func=cmd_state)

    su = subparsers.add_parser("sync-user", help="Propagate a user change event from a JSON file")
    su.add_argument("--event", required=True, help="Path to {entityId, before, after} JSON")
    su.set_defaults(func=cmd_sync_user)

    sm = subparsers.add_parser("sync-medication", help="Propagate a medication change event from a JSON file")
    sm.add_argument("--event", required=True, help="Path to {entityId, before, after} JSON")
    sm.set_defaults(func=cmd_sync_medication)

    dr = subparsers.add_parser("drift", help="Scan every page and report drifted documents (exit 1 on drift)")
    dr.add_argument("--job", choices=sorted(JOBS), default="denormalized", help="Backfill job")
    dr.add_argument("--page-size", type=int, help="Documents per page while scanning")
    dr.set_defaults(func=cmd_drift)

    imp = subparsers.add_parser("import", help="Load a JSON snapshot into the store")
    imp.add_argument("--input", required=True, help="Snapshot JSON path")
    imp.set_defaults(func=cmd_import)

    exp = subparsers.add_parser("export", help="Write collections to a JSON snapshot")
    exp.add_argument("--collections", required=True, help="Comma-separated collection names")
    exp.add_argument("--output", required=True, help="Snapshot JSON path")
    exp.set_defaults(func=cmd_export)

    args = parser.parse_args(argv)

    if args.version:
        print(__version__)
        return

    if not hasattr(args, "func"):
        parser.print_help()
        return

    try:
        settings = Settings.from_env()
        get_logger().configure(level=settings.log_level, log_dir=settings.log_dir)
        args.func(args, settings)
    except DenormSyncError as exc:
        get_logger().error(f"{args.command} failed", error=exc.to_dict())
        print(f"Error: {exc}", file=sys.stderr)
        raise SystemExit(1)
    finally:
        if args.command in ("backfill", "sync-user", "sync-medication"):
            get_logger().log_metrics_summary()


if __name__ == "__main__":
    main()
