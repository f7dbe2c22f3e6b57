"""
SQLAlchemy database models for the Site Compare Service.
"""

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, UniqueConstraint
from sqlalchemy.orm import declarative_base

from sitecompare.compare.models import utcnow

Base = declarative_base()


class ComparisonTask(Base):
    """A saved comparison task that can be run and continued."""
    __tablename__ = 'comparison_task'

    id = Column(Integer, primary_key=True)
    task_id = Column(String(50), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=False)
    configuration_json = Column(Text, nullable=True)
    status = Column(String(20), default='Pending')  # Pending, Running, Completed, Failed, Cancelled
    created_at = Column(DateTime, default=utcnow)
    last_run_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)


class RunResultRecord(Base):
    """One persisted run result; the newest row per task is the latest."""
    __tablename__ = 'run_result'

    id = Column(Integer, primary_key=True)
    task_id = Column(String(50), index=True, nullable=False)
    run_id = Column(String(50), unique=True, index=True, nullable=False)
    status = Column(String(20), nullable=False)
    executed_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    saved_at = Column(DateTime, default=utcnow, onupdate=utcnow, index=True)
    payload = Column(JSON, nullable=False)


class StoredCredential(Base):
    """Authentication cookies captured for a tenant."""
    __tablename__ = 'stored_credential'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(255), unique=True, index=True, nullable=False)
    fed_auth = Column(Text, nullable=False)
    rt_fa = Column(Text, nullable=False)
    user_email = Column(String(255), nullable=True)
    captured_at = Column(DateTime, default=utcnow)
    expires_at = Column(DateTime, nullable=True)


class ScanCacheEntry(Base):
    """Cached library scan, keyed by tenant, site and library."""
    __tablename__ = 'scan_cache_entry'
    __table_args__ = (
        UniqueConstraint('tenant_id', 'site_url', 'library_id', name='uq_scan_cache_key'),
    )

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(255), nullable=False)
    site_url = Column(String(1000), nullable=False)
    library_id = Column(String(255), nullable=False)
    captured_at = Column(DateTime, nullable=False)
    item_count = Column(Integer, default=0)
    items = Column(JSON, nullable=False)
