"""
Command-line interface for siteport.

Notes
-----
The CLI is intentionally thin. It parses arguments and delegates to the
orchestrator in ``site_engine.jobs``.

Safety posture (search-replace command)
---------------------------------------
- Default: dry run (reports changes, issues no UPDATE).
- --commit: writes changed rows back to the store.
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any

from site_engine.config import ExportOptions, ImportRequest, ReplaceOptions
from site_engine.database.reports import RunReport, write_run_report
from site_engine.errors import SiteEngineError
from site_engine.export.records import ExportRecord
from site_engine.init_engine import engine_paths_as_text, init_engine
from site_engine.jobs.models import JobKind, PendingJob
from site_engine.jobs.orchestrator import open_orchestrator
from site_engine.paths_and_safety import SafetyViolationError


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--data-root",
        default=None,
        help="Override the siteport data root (primarily for testing). If omitted, defaults are used.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log at DEBUG level.",
    )


def build_parser() -> argparse.ArgumentParser:
    """
    Build and return the top-level argument parser.

    Returns
    -------
    argparse.ArgumentParser
        Configured parser.
    """
    parser = argparse.ArgumentParser(
        prog="siteport",
        description="Multi-tenant site export, import and search-replace",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    init_p = sub.add_parser("init", help="Create the data root and write settings.json")
    _add_common(init_p)
    init_p.add_argument("--database-url", default=None, help="SQLAlchemy URL of the source store")
    init_p.add_argument("--content-root", default=None, help="Directory holding themes/plugins/uploads")
    init_p.add_argument("--base-prefix", default=None, help="Shared table prefix (default: wp_)")
    init_p.add_argument("--archive-format", default=None, choices=["zip", "tar.zst"])
    init_p.add_argument(
        "--print-paths",
        action="store_true",
        help="Print resolved paths after initialization",
    )

    export_p = sub.add_parser("export", help="Export one or more tenants to archives")
    _add_common(export_p)
    export_p.add_argument(
        "--site-id",
        required=True,
        type=int,
        action="append",
        help="Tenant to export. Repeat for a bulk export.",
    )
    export_p.add_argument("--themes", action="store_true", help="Include themes/")
    export_p.add_argument("--plugins", action="store_true", help="Include plugins/")
    export_p.add_argument("--no-uploads", action="store_true", help="Leave out the tenant's uploads")
    export_p.add_argument(
        "--background",
        action="store_true",
        help="Queue the export; it runs on the next `tick`.",
    )

    list_p = sub.add_parser("list-exports", help="List export archives, newest first")
    _add_common(list_p)

    delete_p = sub.add_parser("delete-export", help="Delete an export archive by name")
    _add_common(delete_p)
    delete_p.add_argument("name", help="Archive file name, e.g. site-export-2-....zip")

    import_p = sub.add_parser("import", help="Queue (or run) an archive import")
    _add_common(import_p)
    import_p.add_argument("source", help="Archive path or https:// URL")
    import_p.add_argument("--new-url", required=True, help="URL of the destination site")
    import_p.add_argument("--destination-url", default=None, help="SQLAlchemy URL of the destination store")
    import_p.add_argument("--delete-archive", action="store_true", help="Delete the archive after a clean import")
    import_p.add_argument("--keep-tables", action="store_true", help="Do not drop the tenant's tables first")
    import_p.add_argument("--force-drop", action="store_true", help="Disable foreign-key checks around the drop")
    import_p.add_argument("--now", action="store_true", help="Run the import immediately instead of queueing it")

    tick_p = sub.add_parser("tick", help="Run deferred exports and at most one pending import")
    _add_common(tick_p)

    pending_p = sub.add_parser("pending", help="List pending jobs")
    _add_common(pending_p)
    pending_p.add_argument("--kind", choices=[k.value for k in JobKind], default=None)

    cancel_p = sub.add_parser("cancel", help="Cancel a pending job that has not started")
    _add_common(cancel_p)
    cancel_p.add_argument("--kind", required=True, choices=[k.value for k in JobKind])
    cancel_p.add_argument("hash", help="Job hash (as printed by `pending`)")

    sr_p = sub.add_parser("search-replace", help="Search and replace across a tenant's tables (default: dry run)")
    _add_common(sr_p)
    sr_p.add_argument("--search", default="", help="Text to search for")
    sr_p.add_argument("--replace", default="", help="Replacement text")
    sr_p.add_argument("--csv", type=Path, default=None, help="CSV file of additional search,replace pairs")
    sr_p.add_argument("--site-id", type=int, default=None, help="Tenant whose tables are processed (default: 1)")
    sr_p.add_argument(
        "--table",
        action="append",
        default=[],
        help="Table to process. Repeatable. Defaults to every table of the tenant.",
    )
    sr_p.add_argument("--commit", action="store_true", help="Write changes (default is a dry run)")
    sr_p.add_argument("--strict", action="store_true", help="Abort on undecodable serialized values")
    sr_p.add_argument("--report", type=Path, default=None, help="Write the run report as JSON")

    return parser


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _render_export(record: ExportRecord) -> str:
    seconds = "-" if record.generation_seconds is None else f"{record.generation_seconds:.2f}s"
    assets = ",".join(record.included_assets) or "database"
    return f"{record.name}  site={record.tenant_id}  size={record.size_bytes}  {assets}  {seconds}"


def _render_job(job: PendingJob) -> str:
    return (
        f"{job.kind.value:<6} {job.hash}  {job.state.value:<7} "
        f"subject={job.subject_id}  enqueued={job.enqueued_at.isoformat()}"
    )


def _render_report(report: RunReport) -> str:
    lines = [
        f"{'Dry run' if report.dry_run else 'Committed'}: "
        f"{report.tables_touched} table(s), {report.total_changes} change(s), "
        f"{report.updates_executed} update(s)"
    ]
    for name, table in report.per_table.items():
        lines.append(f"  {name}: {table.cells_changed} change(s), {table.updates_executed} update(s)")
        for error in table.errors:
            lines.append(f"    ! {error}")
    return "\n".join(lines)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def main(argv: list[str] | None = None) -> int:
    """
    CLI entry point.

    Parameters
    ----------
    argv:
        Optional argument vector. If None, argparse uses sys.argv.

    Returns
    -------
    int
        Process exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)
    data_root = Path(args.data_root) if args.data_root else None

    try:
        if args.command == "init":
            paths = init_engine(
                data_root,
                database_url=args.database_url,
                content_root=args.content_root,
                base_prefix=args.base_prefix,
                archive_format=args.archive_format,
            )
            if args.print_paths:
                print(engine_paths_as_text(paths))
            return 0

        orchestrator = open_orchestrator(data_root)

        if args.command == "export":
            options = ExportOptions(
                themes=args.themes,
                plugins=args.plugins,
                uploads=not args.no_uploads,
            )
            for outcome in orchestrator.export_many(args.site_id, options, background=args.background):
                if isinstance(outcome, PendingJob):
                    print(f"Queued export of site {outcome.subject_id}: {outcome.hash}")
                else:
                    print(_render_export(outcome))
            return 0

        if args.command == "list-exports":
            records = orchestrator.list_exports()
            if not records:
                print("No exports.")
            for record in records:
                print(_render_export(record))
            return 0

        if args.command == "delete-export":
            removed = orchestrator.delete_export(args.name)
            print(f"Deleted {removed.name}")
            return 0

        if args.command == "import":
            request = ImportRequest(
                new_url=args.new_url,
                delete_archive=args.delete_archive,
                drop_tables=not args.keep_tables,
                force_drop=args.force_drop,
                destination_url=args.destination_url,
            )
            outcome = orchestrator.import_site(args.source, request, background=not args.now)
            if isinstance(outcome, PendingJob):
                print(f"Queued import of {Path(str(outcome.subject_id)).name}: {outcome.hash}")
                return 0
            _print_json(outcome.to_dict())
            return 0 if outcome.ok else 2

        if args.command == "tick":
            for record in orchestrator.run_pending_exports():
                print(_render_export(record))
            tick = orchestrator.on_tick()
            if tick.idle:
                print("No pending imports.")
                return 0
            if tick.error is not None:
                print(f"ERROR: {tick.error}")
                return 2
            if tick.result is not None:
                _print_json(tick.result.to_dict())
            return 0

        if args.command == "pending":
            kind = JobKind(args.kind) if args.kind else None
            jobs = orchestrator.pending(kind)
            if not jobs:
                print("No pending jobs.")
            for job in jobs:
                print(_render_job(job))
            return 0

        if args.command == "cancel":
            if orchestrator.cancel(JobKind(args.kind), args.hash):
                print(f"Cancelled {args.kind} job {args.hash}")
                return 0
            print(f"ERROR: no pending {args.kind} job {args.hash}")
            return 2

        if args.command == "search-replace":
            csv_text = args.csv.read_text(encoding="utf-8") if args.csv else None
            report = orchestrator.search_replace(
                args.search,
                args.replace,
                tenant_id=args.site_id,
                tables=args.table or None,
                csv=csv_text,
                options=ReplaceOptions(
                    dry_run=not args.commit,
                    strict=args.strict,
                    page_size=orchestrator.settings.page_size,
                ),
            )
            print(_render_report(report))
            if args.report is not None:
                write_run_report(args.report, report)
            return 0
    except (SafetyViolationError, SiteEngineError, ValueError, OSError) as exc:
        print(f"ERROR: {exc}")
        return 2

    parser.print_help()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
