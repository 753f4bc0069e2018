"""
Monthly billing-period close for every active maintenance plan.

Rolls unused monthly hours over (capped by tier), expires stale rollover hours and
resets the period counters. Plans whose period has not ended yet are skipped, so
running this more than once a day is harmless.

Usage:
  python scripts/close_billing_periods.py [--force]
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import asdict
from datetime import datetime
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.portal.modules.hours.models import MaintenancePlan  # noqa: E402
from app.portal.modules.hours.service import close_billing_period  # noqa: E402
from scripts._db_utils import resolve_database_url, script_session  # noqa: E402


def close_due_periods(s, *, now: datetime | None = None, force: bool = False) -> list[dict]:
    now = now or datetime.utcnow()
    closed = []
    plans = s.query(MaintenancePlan).filter(MaintenancePlan.status == "ACTIVE").order_by(MaintenancePlan.id).all()
    for plan in plans:
        if not force and plan.current_period_end is not None and plan.current_period_end > now:
            continue
        result = close_billing_period(s, plan.id, now)
        closed.append({"plan_id": plan.id, **asdict(result)})
    return closed


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--force", action="store_true", help="close every active plan regardless of period end")
    parser.add_argument("--database-url", default=None)
    args = parser.parse_args(argv)

    with script_session(resolve_database_url(args.database_url)) as s:
        closed = close_due_periods(s, force=args.force)
    for row in closed:
        print(row, flush=True)
    print(f"Closed {len(closed)} billing period(s).", flush=True)


if __name__ == "__main__":
    main()
