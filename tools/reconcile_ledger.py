import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
BACKEND = ROOT / "backend"
os.chdir(BACKEND)
if str(BACKEND) not in sys.path:
    sys.path.insert(0, str(BACKEND))

from coinledger.models import SessionLocal, ensure_runtime_migrations  # noqa: E402
from coinledger.reconciliation import reconciliation_report, run_repairs  # noqa: E402
from coinledger.schemas import RepairIn  # noqa: E402


def print_report(report: dict) -> None:
    items = report["inconsistent_adjustments"]
    print(f"Inconsistent request-linked adjustments: {len(items)}")
    for item in items:
        print(
            f"  - {item['adjustment_id']} request #{item['request_id']} student {item['student_id']}"
            f" amount {item['amount']} active={item['is_active']}: {item['issue']}"
        )
    print(f"Pending redemptions without a deduction: {report['unfunded_redemptions'] or 'none'}")
    print(f"Approved override requests without an override: {report['missing_overrides'] or 'none'}")


def main() -> None:
    apply = "--apply" in sys.argv[1:]
    ensure_runtime_migrations()
    with SessionLocal() as db:
        report = reconciliation_report(db)
        print_report(report)
        if not apply:
            print("Dry run. Re-run with --apply to repair.")
            return
        repaired = run_repairs(
            RepairIn(
                reject_unfunded_redemptions=True,
                restore_missing_overrides=True,
                globalize_redemption_adjustments=True,
                deactivate_orphaned_adjustments=True,
            ),
            db,
            actor="reconcile_ledger",
        )
        for name, ids in repaired.items():
            print(f"{name}: {len(ids)}")
        print_report(reconciliation_report(db))


if __name__ == "__main__":
    main()
