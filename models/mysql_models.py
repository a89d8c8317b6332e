from sqlalchemy import Column, String, JSON, DateTime, Boolean, Numeric, Integer, Index
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

MONEY = Numeric(precision=20, scale=6)
RATE = Numeric(precision=20, scale=8)


class PricingTier(Base):
    __tablename__ = "pricing_tiers"

    id = Column(String(36), primary_key=True)
    name = Column(String(100), nullable=False)
    description = Column(String(255), nullable=True)
    cpu_hourly = Column(RATE, nullable=False)
    memory_hourly = Column(RATE, nullable=False)
    disk_hourly = Column(RATE, nullable=False)
    cpu_monthly = Column(RATE, nullable=False)
    memory_monthly = Column(RATE, nullable=False)
    disk_monthly = Column(RATE, nullable=False)
    is_default = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class UsageRecord(Base):
    __tablename__ = "usage_records"
    __table_args__ = (
        Index("ix_usage_records_tenant_instance_active", "tenant_id", "instance_id", "is_active"),
    )

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(50), nullable=False, index=True)
    instance_id = Column(Integer, nullable=False)
    node = Column(String(100), nullable=False)
    instance_type = Column(String(10), nullable=False, default="qemu")
    instance_name = Column(String(255), nullable=True)
    billing_mode = Column(String(10), nullable=False, default="PAYG")
    cores = Column(Integer, nullable=False)
    memory_mb = Column(Integer, nullable=False)
    disk_gb = Column(Integer, nullable=False)
    hourly_rate = Column(RATE, nullable=False)
    monthly_rate = Column(RATE, nullable=True)
    started_at = Column(DateTime, nullable=False)
    last_billed_at = Column(DateTime, nullable=True)
    stopped_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, server_default=func.now())


class CreditBalance(Base):
    __tablename__ = "credit_balances"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(50), unique=True, nullable=False, index=True)
    balance = Column(MONEY, nullable=False, default=0)
    currency = Column(String(10), nullable=False, default="EUR")
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class Transaction(Base):
    __tablename__ = "transactions"

    # autoincrement id gives a total order per tenant
    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(50), nullable=False, index=True)
    type = Column(String(20), nullable=False)
    amount = Column(MONEY, nullable=False)
    balance_after = Column(MONEY, nullable=False)
    description = Column(String(255), nullable=False)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, nullable=False)
