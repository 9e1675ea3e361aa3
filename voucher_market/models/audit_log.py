from sqlalchemy import Column, DateTime, Integer, String, Text

from voucher_market.core.database import Base
from voucher_market.core.timeutils import utcnow


class AuditLog(Base):
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(36), index=True, nullable=True)
    action = Column(String(64), index=True, nullable=False)
    entity_type = Column(String(32), nullable=True)
    entity_id = Column(String(36), index=True, nullable=True)
    meta_json = Column(Text, nullable=True)
    created_at = Column(DateTime, index=True, default=utcnow, nullable=False)
