"""Remote store abstraction for the reconciliation engine.

The engine only talks to storage through :class:`RemoteStore`. Every method is
a short, self-contained unit of work (its own session and commit) so that the
retry policy can safely re-run it.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime
from typing import NamedTuple

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload, sessionmaker

from app.core.db import Category, SyncPerformanceStat, Transaction, TransactionCategory
from app.core.models import CategoryOut, TransactionOut
from app.core.utils import from_cents, get_logger, utcnow

logger = get_logger("expense-sync.store")


class TransactionKey(NamedTuple):
    """Exact-field identity of a transaction."""

    user_id: str
    amount_cents: int
    date: datetime
    description: str
    type: str


class RemoteStatus(NamedTuple):
    categories_count: int
    transactions_count: int
    last_updated: datetime | None


class RemoteStore(ABC):
    """Narrow interface onto the authoritative copy of a user's records."""

    @abstractmethod
    def find_category(self, user_id: str, name: str) -> CategoryOut | None:
        """Return the user's category with this exact name, if any."""

    @abstractmethod
    def insert_category(
        self, user_id: str, name: str, color: str, timestamp: datetime
    ) -> tuple[CategoryOut, bool]:
        """Insert a category whose created/updated time is ``timestamp``; return ``(category, created)``.

        A uniqueness conflict on ``(user_id, name)`` resolves to the existing row with ``created=False``.
        """

    @abstractmethod
    def update_category(self, category_id: str, color: str, updated_at: datetime) -> None:
        """Overwrite a category's color and modification time."""

    @abstractmethod
    def list_categories(self, user_id: str) -> list[CategoryOut]:
        """All of a user's categories ordered by name."""

    @abstractmethod
    def find_transaction(self, key: TransactionKey) -> str | None:
        """Id of the transaction matching ``key`` exactly, if any."""

    @abstractmethod
    def insert_transaction(self, key: TransactionKey, timestamp: datetime) -> tuple[str, bool]:
        """Insert a transaction; return ``(id, created)``.

        A uniqueness conflict resolves to the existing row with ``created=False``.
        """

    @abstractmethod
    def resolve_category_ids(self, user_id: str, references: Iterable[str]) -> tuple[list[str], list[str]]:
        """Map category ids or names to ids; return ``(ids, unresolved)``."""

    @abstractmethod
    def get_transaction_category_ids(self, transaction_id: str) -> set[str]:
        """Ids of the categories currently linked to a transaction."""

    @abstractmethod
    def replace_transaction_categories(self, transaction_id: str, category_ids: Iterable[str]) -> None:
        """Clear a transaction's category links and write ``category_ids``."""

    @abstractmethod
    def list_transactions(self, user_id: str) -> list[TransactionOut]:
        """All of a user's transactions, newest date first, with category names."""

    @abstractmethod
    def get_status(self, user_id: str) -> RemoteStatus:
        """Counts and last transaction update for a user."""

    @abstractmethod
    def record_performance(
        self,
        user_id: str,
        operation_type: str,
        item_count: int,
        duration_ms: int,
        created: int,
        updated: int,
        error_count: int,
    ) -> None:
        """Persist timing stats for one batch operation."""


def format_transaction_date(value: datetime) -> str:
    """Render a stored date the way devices send it."""
    if value.hour == value.minute == value.second == 0:
        return value.strftime("%Y-%m-%d")
    return value.strftime("%Y-%m-%d %H:%M:%S")


def _category_out(row: Category) -> CategoryOut:
    """Convert a category row to its read model."""
    return CategoryOut(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        color=row.color,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqlRemoteStore(RemoteStore):
    """:class:`RemoteStore` backed by the SQLAlchemy models in :mod:`app.core.db`."""

    def __init__(self, session_factory: sessionmaker) -> None:
        """Keep the session factory used for every operation."""
        self.Session = session_factory

    def find_category(self, user_id: str, name: str) -> CategoryOut | None:
        """Look a category up by owner and exact name."""
        with self.Session() as session:
            row = session.execute(
                select(Category).where(Category.user_id == user_id, Category.name == name)
            ).scalar_one_or_none()
            return _category_out(row) if row else None

    def insert_category(
        self, user_id: str, name: str, color: str, timestamp: datetime
    ) -> tuple[CategoryOut, bool]:
        """Insert a category, resolving a uniqueness conflict to the existing row."""
        with self.Session() as session:
            row = Category(user_id=user_id, name=name, color=color, created_at=timestamp, updated_at=timestamp)
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = self.find_category(user_id, name)
                if existing is None:
                    raise
                logger.info(f"Duplicate category insert for user {user_id} resolved to {existing.id}")
                return existing, False
            return _category_out(row), True

    def update_category(self, category_id: str, color: str, updated_at: datetime) -> None:
        """Overwrite color and modification time."""
        with self.Session() as session:
            row = session.get(Category, category_id)
            if row is None:
                msg = f"Category {category_id} disappeared before update"
                raise LookupError(msg)
            row.color = color
            row.updated_at = updated_at
            session.commit()

    def list_categories(self, user_id: str) -> list[CategoryOut]:
        """All of the owner's categories ordered by name."""
        with self.Session() as session:
            rows = session.execute(
                select(Category).where(Category.user_id == user_id).order_by(Category.name)
            ).scalars()
            return [_category_out(row) for row in rows]

    def find_transaction(self, key: TransactionKey) -> str | None:
        """Id of the transaction matching every key field."""
        with self.Session() as session:
            return session.execute(
                select(Transaction.id).where(
                    Transaction.user_id == key.user_id,
                    Transaction.amount_cents == key.amount_cents,
                    Transaction.date == key.date,
                    Transaction.description == key.description,
                    Transaction.type == key.type,
                )
            ).scalar_one_or_none()

    def insert_transaction(self, key: TransactionKey, timestamp: datetime) -> tuple[str, bool]:
        """Insert a transaction, resolving a uniqueness conflict to the existing row."""
        with self.Session() as session:
            row = Transaction(
                user_id=key.user_id,
                amount_cents=key.amount_cents,
                date=key.date,
                description=key.description,
                type=key.type,
                created_at=timestamp,
                updated_at=timestamp,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = self.find_transaction(key)
                if existing is None:
                    raise
                logger.info(f"Duplicate transaction insert for user {key.user_id} resolved to {existing}")
                return existing, False
            return row.id, True

    def resolve_category_ids(self, user_id: str, references: Iterable[str]) -> tuple[list[str], list[str]]:
        """Resolve ids first, then names, within the owner's categories."""
        refs = list(dict.fromkeys(references))
        if not refs:
            return [], []
        with self.Session() as session:
            rows = session.execute(
                select(Category.id, Category.name).where(
                    Category.user_id == user_id,
                    (Category.id.in_(refs)) | (Category.name.in_(refs)),
                )
            ).all()
        known_ids = {row.id for row in rows}
        by_name = {row.name: row.id for row in rows}
        ids: list[str] = []
        unresolved: list[str] = []
        for ref in refs:
            category_id = ref if ref in known_ids else by_name.get(ref)
            if category_id is None:
                unresolved.append(ref)
            elif category_id not in ids:
                ids.append(category_id)
        return ids, unresolved

    def get_transaction_category_ids(self, transaction_id: str) -> set[str]:
        """Ids of a transaction's linked categories."""
        with self.Session() as session:
            rows = session.execute(
                select(TransactionCategory.category_id).where(TransactionCategory.transaction_id == transaction_id)
            ).scalars()
            return set(rows)

    def replace_transaction_categories(self, transaction_id: str, category_ids: Iterable[str]) -> None:
        """Replace a transaction's category links in one commit."""
        with self.Session() as session:
            session.execute(delete(TransactionCategory).where(TransactionCategory.transaction_id == transaction_id))
            session.add_all(
                TransactionCategory(transaction_id=transaction_id, category_id=category_id)
                for category_id in dict.fromkeys(category_ids)
            )
            row = session.get(Transaction, transaction_id)
            if row is not None:
                row.updated_at = utcnow()
            session.commit()

    def list_transactions(self, user_id: str) -> list[TransactionOut]:
        """Owner's transactions, newest date first, with linked categories."""
        with self.Session() as session:
            rows = session.execute(
                select(Transaction)
                .where(Transaction.user_id == user_id)
                .options(selectinload(Transaction.links).selectinload(TransactionCategory.category))
                .order_by(Transaction.date.desc(), Transaction.created_at.desc())
            ).scalars()
            return [
                TransactionOut(
                    id=row.id,
                    user_id=row.user_id,
                    amount=from_cents(row.amount_cents),
                    type=row.type,
                    date=format_transaction_date(row.date),
                    description=row.description or "",
                    categories=[link.category_id for link in row.links],
                    category_names=[link.category.name for link in row.links],
                    created_at=row.created_at,
                    updated_at=row.updated_at,
                )
                for row in rows
            ]

    def get_status(self, user_id: str) -> RemoteStatus:
        """Counts and latest transaction update for the owner."""
        with self.Session() as session:
            categories_count = session.scalar(select(func.count(Category.id)).where(Category.user_id == user_id))
            owned = Transaction.user_id == user_id
            transactions_count = session.scalar(select(func.count(Transaction.id)).where(owned))
            last_updated = session.scalar(select(func.max(Transaction.updated_at)).where(owned))
            return RemoteStatus(categories_count or 0, transactions_count or 0, last_updated)

    def record_performance(
        self,
        user_id: str,
        operation_type: str,
        item_count: int,
        duration_ms: int,
        created: int,
        updated: int,
        error_count: int,
    ) -> None:
        """Insert one performance row."""
        with self.Session() as session:
            session.add(
                SyncPerformanceStat(
                    user_id=user_id,
                    operation_type=operation_type,
                    item_count=item_count,
                    duration_ms=duration_ms,
                    created_items=created,
                    updated_items=updated,
                    error_count=error_count,
                )
            )
            session.commit()
