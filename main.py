#!/usr/bin/env python3
"""
Deployment failure triage - deterministic verdict engine.
Classify infrastructure failure signals into auditable verdicts.
"""

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

from dateutil import parser as date_parser

logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "info").upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stderr,
)

logger = logging.getLogger(__name__)

#
# NOTE: Keep triage imports lazy (inside functions) so `--migrate` and `--serve` don't pay for
# modules they never use.
#


def parse_since(value: Optional[str]):  # type: ignore[no-untyped-def]
    """ISO-8601 timestamp for --since (naive values are UTC)."""
    if not value:
        return None
    try:
        return date_parser.isoparse(value)
    except (ValueError, TypeError) as e:
        raise SystemExit(f"Invalid --since timestamp {value!r}: {e}")


def load_signals(path: Optional[str]) -> List[Dict[str, Any]]:
    """Signals JSON: a list of signal objects, or {"signals": [...]}. Reads stdin when no path."""
    if path:
        with open(path, "r", encoding="utf-8") as f:
            payload = f.read()
    else:
        payload = sys.stdin.read()
    data = json.loads(payload or "[]")
    if isinstance(data, dict):
        data = data.get("signals", [])
    if not isinstance(data, list):
        raise SystemExit("Signals JSON must be a list or an object with a 'signals' list")
    return data


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, sort_keys=False, default=str))


def _build_engine():  # type: ignore[no-untyped-def]
    from triage.pipeline.engine import VerdictEngine
    from triage.storage import build_store_from_env
    from triage.storage.config import load_storage_config

    cfg = load_storage_config()
    return VerdictEngine(build_store_from_env(cfg), event_ttl_days=cfg.event_ttl_days)


def run_classify(args: argparse.Namespace) -> int:
    signals = load_signals(args.signals_file)
    engine = _build_engine()

    if args.dry_run:
        _print_json(engine.classify_only(signals))
        return 0

    if not args.execution_id:
        print("--execution-id is required with --classify (or use --dry-run)", file=sys.stderr)
        return 2

    verdict = engine.classify_and_record(args.execution_id, signals)
    from triage.pipeline.gate import check_deployment_gate

    gate = check_deployment_gate(verdict)
    _print_json(
        {
            "verdict": verdict.model_dump(mode="json"),
            "gate": {
                "allowed": gate.allowed,
                "verdict": gate.verdict.value,
                "action": gate.action.value,
                "reason": gate.reason,
            },
        }
    )
    return 0


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Classify deployment failure signals into deterministic, auditable verdicts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Classify signals for an execution and record the verdict
  python main.py --classify --execution-id exec-123 --signals-file signals.json

  # Classify without touching storage
  cat signals.json | python main.py --classify --dry-run

  # Consistency report for the last day
  python main.py --consistency --since 2025-01-01T00:00:00Z
        """,
    )

    parser.add_argument("--classify", action="store_true", help="Classify signals (JSON from --signals-file or stdin)")
    parser.add_argument("--signals-file", help="Path to a JSON file with failure signals. If omitted, reads stdin.")
    parser.add_argument("--execution-id", help="Execution id the verdict belongs to (used with --classify)")
    parser.add_argument(
        "--dry-run", action="store_true", help="Classify against the active policy without persisting anything"
    )
    parser.add_argument("--serve", action="store_true", help="Run the HTTP API server")
    parser.add_argument("--host", default="0.0.0.0", help="API server bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8080, help="API server listen port (default: 8080)")
    parser.add_argument("--migrate", action="store_true", help="Apply pending Postgres migrations and exit")
    parser.add_argument("--consistency", action="store_true", help="Print the consistency report")
    parser.add_argument("--kpis", action="store_true", help="Print verdict KPIs")
    parser.add_argument(
        "--statistics", action="store_true", help="Print per error class and service verdict statistics"
    )
    parser.add_argument("--since", help="Only include verdicts created at or after this ISO-8601 timestamp")
    parser.add_argument("--fingerprint-stats", metavar="FP", help="Print occurrence stats for a fingerprint")

    args = parser.parse_args()

    try:
        if args.migrate:
            from triage.storage.migrate import main as migrate_main

            return migrate_main([])

        if args.serve:
            from triage.api.app import run as run_api

            run_api(host=args.host, port=args.port)
            return 0

        if args.classify:
            return run_classify(args)

        if args.consistency:
            _print_json(_build_engine().get_consistency_report(parse_since(args.since)).model_dump(mode="json"))
            return 0

        if args.kpis:
            _print_json(_build_engine().get_kpis(parse_since(args.since)).model_dump(mode="json"))
            return 0

        if args.statistics:
            stats = _build_engine().get_verdict_statistics(parse_since(args.since))
            _print_json([s.model_dump(mode="json") for s in stats])
            return 0

        if args.fingerprint_stats:
            _print_json(_build_engine().get_fingerprint_stats(args.fingerprint_stats).model_dump(mode="json"))
            return 0

        parser.print_help()
        return 0

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        raise


if __name__ == "__main__":
    sys.exit(main())
