"""
Citizen Gem Model - driving eligibility currency
"""
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, String

from citizen_ledger.db.database import Base


class CitizenGem(Base):
    """Gem account; ``amount <= 0`` always implies ``is_restricted``"""

    __tablename__ = "citizen_gems"

    id = Column(Integer, primary_key=True, autoincrement=True)
    citizen_id = Column(String(36), unique=True, nullable=False, index=True)

    amount = Column(Integer, nullable=False, default=0)
    is_restricted = Column(Boolean, nullable=False, default=True)

    last_updated = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    created_at = Column(DateTime, default=datetime.utcnow)
