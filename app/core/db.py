"""DB models and session helpers for the Expense Sync service.

The same database holds the remote copy of each user's categories and
transactions and the durable sync-job queue.
"""

import uuid

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from app.core.utils import utcnow

Base = declarative_base()


def new_id() -> str:
    """Generate a new UUID4 primary key."""
    return str(uuid.uuid4())


class Category(Base):
    """A user's category. Names are unique per user."""

    __tablename__ = "categories"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_categories_user_name"),)

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    color = Column(String(9), nullable=False, default="#000000")
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class Transaction(Base):
    """A user's income or expense. Amounts are stored in cents."""

    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "amount_cents", "date", "description", "type", name="uq_transactions_identity"
        ),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
        CheckConstraint("type IN ('income', 'expense')", name="ck_transactions_type"),
        Index("ix_transactions_user_updated", "user_id", "updated_at"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    amount_cents = Column(BigInteger, nullable=False)
    type = Column(String(10), nullable=False)
    date = Column(DateTime, nullable=False)
    description = Column(String(500), nullable=False, default="")
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    links = relationship(
        "TransactionCategory",
        back_populates="transaction",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class TransactionCategory(Base):
    """Link table between transactions and categories."""

    __tablename__ = "transaction_categories"

    transaction_id = Column(String(36), ForeignKey("transactions.id", ondelete="CASCADE"), primary_key=True)
    category_id = Column(String(36), ForeignKey("categories.id", ondelete="CASCADE"), primary_key=True)

    transaction = relationship("Transaction", back_populates="links")
    category = relationship("Category")


class SyncJob(Base):
    """A durable unit of sync work."""

    __tablename__ = "sync_jobs"
    __table_args__ = (
        Index("ix_sync_jobs_status_created", "status", "created_at"),
        Index("ix_sync_jobs_user_created", "user_id", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False)
    job_type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    progress = Column(Integer, nullable=False, default=0)
    total_items = Column(Integer, nullable=False, default=0)
    processed_items = Column(Integer, nullable=False, default=0)
    payload = Column(JSON, nullable=True)
    results = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)


class SyncPerformanceStat(Base):
    """Timing and outcome of one batch reconciliation."""

    __tablename__ = "sync_performance_stats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    operation_type = Column(String(40), nullable=False)
    item_count = Column(Integer, nullable=False)
    duration_ms = Column(Integer, nullable=False)
    created_items = Column(Integer, nullable=False, default=0)
    updated_items = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)


def _enable_sqlite_foreign_keys(dbapi_connection: object, _record: object) -> None:
    """Turn on foreign key enforcement for each SQLite connection."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_engine(url: str | None = None) -> Engine:
    """Create a SQLAlchemy engine using the configured database URL."""
    if url is None:
        from app.core.settings import get_settings

        url = get_settings().database_url
    if url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"check_same_thread": False})
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine
    return create_engine(url, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker:
    """Session factory shared by the stores; sessions never expire on commit."""
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create every table that does not exist yet."""
    Base.metadata.create_all(engine)
