from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from voucher_market.core.timeutils import utcnow
from voucher_market.models.deal import Deal
from voucher_market.models.payment import Payment
from voucher_market.models.voucher import Voucher


class VoucherStore:
    """Persistence operations used by the purchase and redemption workflows.

    Methods never commit; the caller owns the transaction.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def find_deal(self, deal_id: str) -> Optional[Deal]:
        return self.db.query(Deal).filter(Deal.id == deal_id).first()

    def count_vouchers_for_deal(self, deal_id: str) -> int:
        return int(self.db.query(func.count(Voucher.id)).filter(Voucher.deal_id == deal_id).scalar() or 0)

    def count_vouchers_for_user_and_deal(self, user_id: str, deal_id: str) -> int:
        return int(
            self.db.query(func.count(Voucher.id))
            .filter(Voucher.user_id == user_id, Voucher.deal_id == deal_id)
            .scalar()
            or 0
        )

    def issued_count(self, deal_id: str) -> int:
        value = self.db.execute(select(Deal.vouchers_issued).where(Deal.id == deal_id)).scalar()
        return int(value or 0)

    def reserve_capacity(self, deal_id: str, quantity: int) -> bool:
        """Claim quantity slots on the deal in a single conditional UPDATE.

        Returns False when the deal is no longer active or the slots are gone.
        The row stays locked until the surrounding transaction ends.
        """
        result = self.db.execute(
            update(Deal)
            .where(
                Deal.id == deal_id,
                Deal.status == "active",
                Deal.vouchers_issued + quantity <= Deal.max_vouchers,
            )
            .values(vouchers_issued=Deal.vouchers_issued + quantity, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def insert_vouchers(self, rows: Iterable[Voucher]) -> list[Voucher]:
        vouchers = list(rows)
        self.db.add_all(vouchers)
        self.db.flush()
        return vouchers

    def insert_payment(self, row: Payment) -> Payment:
        self.db.add(row)
        self.db.flush()
        return row

    def find_voucher_by_code(self, code: str) -> Optional[Voucher]:
        return self.db.query(Voucher).filter(Voucher.voucher_code == code).first()

    def find_voucher(self, voucher_id: str) -> Optional[Voucher]:
        return self.db.query(Voucher).filter(Voucher.id == voucher_id).first()

    def code_exists(self, code: str) -> bool:
        return self.db.query(Voucher.id).filter(Voucher.voucher_code == code).first() is not None

    def update_voucher_status(
        self,
        voucher_id: str,
        new_status: str,
        expected_status: str = "active",
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Compare-and-swap the voucher status. Returns True when this call won."""
        now = now or utcnow()
        values = {"status": new_status, "updated_at": now}
        if new_status == "redeemed":
            values["redeemed_at"] = now
            values["redeemed_by"] = actor_id
        result = self.db.execute(
            update(Voucher)
            .where(Voucher.id == voucher_id, Voucher.status == expected_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def refund_active_vouchers(self, voucher_ids: Iterable[str]) -> int:
        ids = [str(voucher_id) for voucher_id in voucher_ids]
        if not ids:
            return 0
        result = self.db.execute(
            update(Voucher)
            .where(Voucher.id.in_(ids), Voucher.status == "active")
            .values(status="refunded", updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    def update_payment_status(self, payment_id: str, new_status: str, expected_status: str, **values) -> bool:
        result = self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == expected_status)
            .values(status=new_status, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def sweep_expired_vouchers(self, now: datetime) -> list[dict[str, str]]:
        candidates = (
            self.db.query(Voucher.id, Voucher.voucher_code)
            .filter(Voucher.status == "active", Voucher.expires_at <= now)
            .all()
        )
        expired = []
        for row in candidates:
            # a concurrent redemption wins over the sweep for that voucher
            if self.update_voucher_status(row.id, "expired", expected_status="active", now=now):
                expired.append({"id": row.id, "voucher_code": row.voucher_code})
        return expired

    def reactivate_refunded_vouchers(self, voucher_ids: Iterable[str], now: datetime) -> int:
        ids = [str(voucher_id) for voucher_id in voucher_ids]
        if not ids:
            return 0
        result = self.db.execute(
            update(Voucher)
            .where(Voucher.id.in_(ids), Voucher.status == "refunded", Voucher.expires_at > now)
            .values(status="active", updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)
