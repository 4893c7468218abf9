from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _bootstrap_app():
    from plankmarket import create_app

    app = create_app()
    app.app_context().push()
    return app


def main():
    parser = argparse.ArgumentParser(description="Compare order escrow state against payment movement and report drift.")
    parser.add_argument("--held-days", type=int, default=7, help="Days a delivered order may keep funds in escrow.")
    parser.add_argument("--persist", action="store_true", help="Persist report row in reconciliation_reports.")
    args = parser.parse_args()

    _bootstrap_app()
    from plankmarket.services.reconciliation_service import persist_report, reconcile_escrow_ledger

    summary = reconcile_escrow_ledger(held_after_delivery_days=int(args.held_days))
    if args.persist:
        row = persist_report(summary, created_by=None)
        summary["report_id"] = int(row.id)

    print(json.dumps(summary, indent=2, default=str))
    drift_count = int(summary.get("drift_count") or 0)
    return 0 if drift_count == 0 else 2


if __name__ == "__main__":
    sys.exit(main())
