from __future__ import annotations

import argparse
import json
import sys


def _bootstrap_app():
    from marketroute import create_app

    app = create_app()
    app.app_context().push()
    return app


def main(argv=None):
    parser = argparse.ArgumentParser(description="Verify the escrow ledger sums to zero and holds match orders.")
    parser.add_argument("--persist", action="store_true", help="Persist report row in reconciliation_reports.")
    parser.add_argument("--operator", default=None, help="Operator id recorded on a persisted report.")
    args = parser.parse_args(argv)

    _bootstrap_app()
    from marketroute.services.reconciliation_service import persist_report, reconcile_ledger

    summary = reconcile_ledger()
    if args.persist:
        row = persist_report(summary, created_by=args.operator)
        summary["report_id"] = int(row.id)

    print(json.dumps(summary, indent=2))
    drift_count = int(summary.get("drift_count") or 0)
    return 0 if drift_count == 0 else 2


if __name__ == "__main__":
    sys.exit(main())
