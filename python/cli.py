"""
ATS Verify command line

    ats-verify risk applications.csv [--persist] [--json]
    ats-verify imei devices.csv declaration.txt [--json] [--output report.txt]
    ats-verify reports
    ats-verify init-db

`risk` runs the anomaly detector offline; with --persist the upload is
archived and auto-flagged in the database configured by DATABASE_URL /
DB_* environment variables.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from anomaly_detector import AnomalyDetector, AnomalyReport
from config_manager import ConfigManager, ConfigurationError
from csv_ingest import IngestionError, build_column_specs, read_application_records, decode_upload
from imei_verifier import ImeiVerifier, generate_text_report
from log_utils import setup_logging

logger = logging.getLogger(__name__)


def print_risk_report(report: AnomalyReport) -> None:
    print(f"Rows analyzed: {report.total_rows}")
    print(f"Unique IIN/BINs: {report.unique_identifiers}")

    print(f"\n--- DOCUMENT REUSE ({len(report.document_reuse)}) ---")
    for flag in report.document_reuse:
        print(f"{flag.document_number}: {flag.count} IIN/BINs ({', '.join(flag.identifiers)})")

    print(f"\n--- FREQUENCY ({len(report.frequency)}) ---")
    for flag in report.frequency:
        print(f"{flag.identifier}: {flag.count} applications [{flag.tier.value}]")

    print(f"\n--- FLIP-FLOP STATUS ({len(report.flip_flop)}) ---")
    for flag in report.flip_flop:
        ids = f" (applications: {', '.join(flag.application_ids)})" if flag.application_ids else ""
        print(f"{flag.identifier}: {' -> '.join(flag.statuses)}{ids}")


def run_risk(args, config: ConfigManager) -> int:
    data = Path(args.csv).read_bytes()

    if args.persist:
        from database.connection import init_db, close_db
        from database.risk_analysis_service import RiskAnalysisService

        provider = init_db(database=config.database)
        try:
            with provider.session_scope() as session:
                result = RiskAnalysisService(session, config).analyze_upload(data, flagged_by=args.actor)
                payload = result.to_dict()
                report = result.report
        finally:
            close_db()
        logger.info("Archived %d rows, auto-flagged %d IIN/BINs", result.archived, result.auto_flagged)
    else:
        ra = config.risk_analysis
        ingest = read_application_records(data, build_column_specs(ra.column_aliases, ra.required_columns))
        report = AnomalyDetector.from_config(config).analyze(ingest.records)
        payload = report.to_dict()

    if args.json:
        print(json.dumps(payload, indent=2, ensure_ascii=False))
    else:
        print_risk_report(report)
    return 0


def run_imei(args, config: ConfigManager) -> int:
    csv_data = Path(args.csv).read_bytes()
    text = decode_upload(Path(args.declaration).read_bytes())

    report = ImeiVerifier(config.imei).analyze(csv_data, text)

    output = (
        json.dumps(report.to_dict(), indent=2, ensure_ascii=False) if args.json
        else generate_text_report(report)
    )
    if args.output:
        Path(args.output).write_text(output, encoding='utf-8')
        logger.info("Report saved: %s", args.output)
    else:
        sys.stdout.write(output)
    return 0


def run_reports(args, config: ConfigManager) -> int:
    from database.connection import init_db, close_db
    from database.risk_analysis_service import RiskAnalysisService

    provider = init_db(database=config.database)
    try:
        with provider.session_scope() as session:
            reports = RiskAnalysisService(session, config).get_analytics_reports()
    finally:
        close_db()
    print(json.dumps(reports, indent=2, ensure_ascii=False))
    return 0


def run_init_db(args, config: ConfigManager) -> int:
    from database.connection import init_db, close_db

    provider = init_db(database=config.database)
    try:
        provider.create_tables()
    finally:
        close_db()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ats-verify", description="ATS Verify risk analysis and IMEI verification")
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    sub = parser.add_subparsers(dest="command", required=True)

    risk = sub.add_parser("risk", help="Analyze a bulk application CSV")
    risk.add_argument("csv", help="Application CSV")
    risk.add_argument("--persist", action="store_true", help="Archive the upload and auto-flag in the database")
    risk.add_argument("--actor", default="cli", help="Actor recorded on auto-flagged profiles")
    risk.add_argument("--json", action="store_true", help="Print JSON instead of text")
    risk.set_defaults(handler=run_risk)

    imei = sub.add_parser("imei", help="Verify CSV IMEIs against declaration text")
    imei.add_argument("csv", help="CSV with IMEI columns")
    imei.add_argument("declaration", help="Declaration text file (already extracted)")
    imei.add_argument("--json", action="store_true", help="Print JSON instead of the text report")
    imei.add_argument("--output", "-o", help="Write the report to a file")
    imei.set_defaults(handler=run_imei)

    reports = sub.add_parser("reports", help="Print historical reports from the archive")
    reports.set_defaults(handler=run_reports)

    init = sub.add_parser("init-db", help="Create database tables")
    init.set_defaults(handler=run_init_db)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)

    try:
        config = ConfigManager(args.config) if args.config else ConfigManager.get_instance()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(config.logging)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        return args.handler(args, config)
    except IngestionError as e:
        print(f"Error: {e}", file=sys.stderr)
        if e.suggestion:
            print(f"Hint: {e.suggestion}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
