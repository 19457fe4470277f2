# api/models/lead.py
from __future__ import annotations

from sqlalchemy import CheckConstraint, Column, Enum, Index, Integer, String

from api.db.base import Base, TimestampMixin


class Lead(TimestampMixin, Base):
    __tablename__ = "leads"

    id = Column(Integer, primary_key=True)

    name = Column(String(255), nullable=False)
    # Dedup key for bulk imports: one lead per phone number.
    phone = Column(String(20), nullable=False, unique=True)
    email = Column(String(255), nullable=True)
    source = Column(String(100), nullable=False, server_default="csv_import")

    status = Column(
        Enum("new", "contacted", "qualified", "converted", name="lead_status"),
        nullable=False,
        server_default="new",
    )

    __table_args__ = (
        Index("idx_leads_email", "email"),
        Index("idx_leads_status", "status"),
        Index("idx_leads_source_created_at", "source", "created_at"),
        CheckConstraint("length(phone) > 0", name="check_phone_not_empty"),
        CheckConstraint("length(name) >= 2", name="check_name_min_length"),
    )
