"""User model."""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class User(Base):
    """Platform user holding a prepaid balance in minor currency units."""

    __tablename__ = "users"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_users_balance_non_negative"),)

    id = Column(String, primary_key=True)
    first_name = Column(String, nullable=True)
    balance = Column(Integer, nullable=False, default=0, server_default="0")
    trial_used = Column(Boolean, nullable=False, default=False, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    accounts = relationship("Account", back_populates="user")
    invoices = relationship("Invoice", back_populates="user")
    balance_entries = relationship("BalanceEntry", back_populates="user")
