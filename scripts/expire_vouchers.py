#!/usr/bin/env python3
"""Cron entry point: expire overdue vouchers and optionally send expiry reminders."""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT))

from voucher_market.core.database import SessionLocal  # noqa: E402
from voucher_market.core.logging_setup import configure_logging  # noqa: E402
import voucher_market.models  # noqa: E402,F401
import voucher_market.services.event_handlers  # noqa: E402,F401
from voucher_market.services.vouchers import expire_old_vouchers, send_expiry_reminders  # noqa: E402


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Expire overdue vouchers.")
    parser.add_argument(
        "--remind-days",
        type=int,
        default=0,
        help="Also email owners of vouchers expiring within this many days (0 disables)",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    configure_logging()

    db = SessionLocal()
    try:
        expired = expire_old_vouchers(db)
        print(f"Expired {len(expired)} vouchers")
        if args.remind_days > 0:
            reminded = send_expiry_reminders(db, days_ahead=args.remind_days)
            print(f"Sent {len(reminded)} expiry reminders")
    finally:
        db.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
