"""Reconciliation of device records against the remote store.

Categories are upserted by ``(user, name)`` with last-write-wins on the
modification timestamp; transactions are matched by their exact fields and
their category links are replaced wholesale. Every store call runs under the
retry policy, and a failing item is recorded without aborting its batch.
"""

import time
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel

from app.core.errors import ErrorAggregator, RetryConfig, log_sync_error, safe_call, with_retry
from app.core.models import (
    CategoryIn,
    FullSyncResults,
    SyncItemError,
    SyncResult,
    SyncResults,
    SyncStatus,
    TransactionIn,
    UploadPayload,
    UserData,
)
from app.core.settings import Settings, get_settings
from app.core.utils import get_logger, to_cents, utcnow, utcnow_iso
from app.core.validation import SyncValidator, parse_transaction_date, validate_or_raise
from app.services.remote_store import RemoteStore, TransactionKey

logger = get_logger("expense-sync.sync")


class Outcome(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


def _raw(item: object) -> object:
    """Plain dict form of a model, or the item unchanged."""
    if isinstance(item, BaseModel):
        return item.model_dump(by_alias=True, exclude_none=True)
    return item


def _payload_dict(payload: object) -> Any:
    """Normalize an upload payload for validation."""
    if payload is None:
        return {}
    if isinstance(payload, BaseModel):
        return {
            "categories": [_raw(item) for item in payload.categories],
            "transactions": [_raw(item) for item in payload.transactions],
        }
    # anything else is left for the validator to reject
    return dict(payload) if isinstance(payload, Mapping) else payload


def _category_label(raw: object) -> str:
    """Short name of a category for error reports."""
    if isinstance(raw, Mapping):
        return str(raw.get("name", "<unnamed>"))
    return repr(raw)


def _transaction_label(raw: object) -> str:
    """Short description of a transaction for error reports."""
    if isinstance(raw, Mapping):
        kind = raw.get("type") or raw.get("typeId")
        return f"{raw.get('amount')} {kind} {raw.get('date')}"
    return repr(raw)


def incoming_wins(incoming: datetime | None, stored: datetime | None) -> bool:
    """Last-write-wins: the incoming record wins only when strictly newer.

    An incoming record without a timestamp is treated as written now.
    """
    if incoming is None or stored is None:
        return True
    return incoming > stored


class SyncService:
    """Reconciliation engine between device payloads and a :class:`RemoteStore`."""

    def __init__(
        self,
        store: RemoteStore,
        settings: Settings | None = None,
        retry_config: RetryConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Wire the store with retry policy and validation limits."""
        self.store = store
        self.settings = settings or get_settings()
        self.retry_config = retry_config or RetryConfig.from_settings(self.settings)
        self.sleep = sleep
        self.validator = SyncValidator(self.settings)

    def _call(self, operation: Callable[[], Any]) -> Any:
        """Run a store operation under the retry policy."""
        return with_retry(operation, self.retry_config, sleep=self.sleep)

    # --- validation -----------------------------------------------------------

    def validate_upload(self, payload: UploadPayload | Mapping | None, context: str = "Upload data") -> dict[str, Any]:
        """Validate a whole upload payload, raising on the first failing pass."""
        data = _payload_dict(payload)
        validate_or_raise(data, self.validator.validate_sync_payload, context)
        return data

    # --- categories -----------------------------------------------------------

    def sync_categories(self, user_id: str, categories: Sequence[CategoryIn | Mapping]) -> SyncResult:
        """Upsert categories by name with last-write-wins on color."""
        raw_items = [_raw(item) for item in categories]
        if not raw_items:
            return SyncResult()
        validate_or_raise({"categories": raw_items}, self.validator.validate_sync_payload, "Category sync")
        return self._sync_batch(
            user_id, "category_upsert", raw_items, CategoryIn, self._sync_category, _category_label
        )

    def _sync_category(self, user_id: str, item: CategoryIn) -> Outcome:
        """Insert or last-write-wins update of one category."""
        existing = self._call(lambda: self.store.find_category(user_id, item.name))
        incoming_at = item.modified_at
        if existing is None:
            color = item.color or self.settings.default_category_color
            timestamp = incoming_at or utcnow()
            existing, created = self._call(lambda: self.store.insert_category(user_id, item.name, color, timestamp))
            if created:
                return Outcome.CREATED
            # lost an insert race; reconcile against the row that won

        if not incoming_wins(incoming_at, existing.updated_at):
            return Outcome.UNCHANGED
        color = item.color or existing.color
        if color == existing.color:
            return Outcome.UNCHANGED
        timestamp = incoming_at or utcnow()
        self._call(lambda: self.store.update_category(existing.id, color, timestamp))
        return Outcome.UPDATED

    # --- transactions ---------------------------------------------------------

    def sync_transactions(self, user_id: str, transactions: Sequence[TransactionIn | Mapping]) -> SyncResult:
        """Insert unseen transactions and resynchronize category links."""
        raw_items = [_raw(item) for item in transactions]
        if not raw_items:
            return SyncResult()
        validate_or_raise({"transactions": raw_items}, self.validator.validate_sync_payload, "Transaction sync")
        return self._sync_batch(
            user_id, "transaction_upsert", raw_items, TransactionIn, self._sync_transaction, _transaction_label
        )

    def _sync_transaction(self, user_id: str, item: TransactionIn) -> Outcome:
        """Match or insert one transaction and sync its category links."""
        date = parse_transaction_date(item.date)
        if date is None:
            msg = f"Invalid transaction date: {item.date}"
            raise ValueError(msg)
        key = TransactionKey(
            user_id=user_id,
            amount_cents=to_cents(item.amount),
            date=date,
            description=item.description or "",
            type=str(item.type),
        )

        transaction_id = self._call(lambda: self.store.find_transaction(key))
        created = False
        if transaction_id is None:
            timestamp = item.modified_at or utcnow()
            transaction_id, created = self._call(lambda: self.store.insert_transaction(key, timestamp))

        category_ids, unresolved = self._call(lambda: self.store.resolve_category_ids(user_id, item.categories))
        if unresolved:
            logger.warning(f"Transaction {transaction_id}: skipping unknown categories {unresolved}")

        current = set() if created else self._call(lambda: self.store.get_transaction_category_ids(transaction_id))
        if set(category_ids) != current:
            self._call(lambda: self.store.replace_transaction_categories(transaction_id, category_ids))
            if not created:
                return Outcome.UPDATED
        return Outcome.CREATED if created else Outcome.UNCHANGED

    # --- batch machinery ------------------------------------------------------

    def _sync_batch(
        self,
        user_id: str,
        operation_type: str,
        raw_items: list[object],
        model: type[BaseModel],
        sync_one: Callable[[str, Any], Outcome],
        label: Callable[[object], str],
    ) -> SyncResult:
        """Sync items one by one, collecting failures instead of aborting."""
        logger.info(f"[{operation_type}] Starting sync of {len(raw_items)} items for user {user_id}")
        started = time.perf_counter()
        result = SyncResult()
        aggregator = ErrorAggregator()

        for index, raw in enumerate(raw_items):
            try:
                outcome = sync_one(user_id, model.model_validate(raw))
            except Exception as exc:
                error = aggregator.add(exc)
                log_sync_error(error, f"{operation_type}[{index}]")
                result.errors.append(
                    SyncItemError(item=label(raw), index=index, error=error.message, error_type=str(error.type))
                )
                continue
            if outcome is Outcome.CREATED:
                result.created += 1
            elif outcome is Outcome.UPDATED:
                result.updated += 1

        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            f"[{operation_type}] Completed in {duration_ms}ms: {result.created} created, "
            f"{result.updated} updated, {len(result.errors)} errors"
        )
        if aggregator.has_errors():
            logger.warning(f"[{operation_type}] Error summary: {aggregator.summary()}")

        safe_call(
            lambda: self.store.record_performance(
                user_id,
                operation_type,
                len(raw_items),
                duration_ms,
                result.created,
                result.updated,
                len(result.errors),
            )
        )
        return result

    # --- composite operations -------------------------------------------------

    def upload(self, user_id: str, payload: UploadPayload | Mapping | None) -> SyncResults:
        """Validate then sync categories before transactions."""
        data = self.validate_upload(payload)
        results = SyncResults()
        if data.get("categories"):
            results.categories = self.sync_categories(user_id, data["categories"])
        if data.get("transactions"):
            results.transactions = self.sync_transactions(user_id, data["transactions"])
        return results

    def get_user_data(self, user_id: str) -> UserData:
        """Read-only projection of a user's remote records."""
        categories = self._call(lambda: self.store.list_categories(user_id))
        transactions = self._call(lambda: self.store.list_transactions(user_id))
        logger.info(f"Fetched {len(categories)} categories and {len(transactions)} transactions for user {user_id}")
        return UserData(categories=categories, transactions=transactions)

    def full_sync(self, user_id: str, local: UploadPayload | Mapping | None) -> FullSyncResults:
        """Upload whatever the device sent, then return the authoritative snapshot."""
        upload = self.upload(user_id, local)
        download = self.get_user_data(user_id)
        return FullSyncResults(upload=upload, download=download, timestamp=utcnow_iso())

    def get_sync_status(self, user_id: str) -> SyncStatus:
        """Counts and last sync time for a user."""
        status = self._call(lambda: self.store.get_status(user_id))
        return SyncStatus(
            categories_count=status.categories_count,
            transactions_count=status.transactions_count,
            last_sync=status.last_updated,
            server_time=utcnow_iso(),
        )
