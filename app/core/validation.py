"""Validation of sync payloads before anything is persisted or transmitted.

The validator never raises: every check returns a :class:`ValidationResult`
with field-qualified errors and warnings, and callers decide whether to abort
(:func:`validate_or_raise`) or carry on with the warnings logged.
"""

import json
import math
import re
from collections.abc import Callable, Mapping
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from app.core.errors import SyncError, SyncErrorType
from app.core.settings import Settings, get_settings
from app.core.utils import get_logger

logger = get_logger("expense-sync.validation")

HEX_COLOR_RE = re.compile(r"^#([A-Fa-f0-9]{3}|[A-Fa-f0-9]{6}|[A-Fa-f0-9]{8})$")
DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
DATE_TIME_RE = re.compile(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}$")
DATE_FORMATS = {DATE_ONLY_RE: "%Y-%m-%d", DATE_TIME_RE: "%Y-%m-%d %H:%M:%S"}

TRANSACTION_TYPES = ("income", "expense")
TRANSACTION_TYPE_IDS = {1: "income", 2: "expense"}
JOB_TYPES = ("upload", "download", "full_sync")
SIZE_WARNING_RATIO = 0.8


class ValidationIssue(BaseModel):
    """A single validation error or warning. ``index`` is 0-based."""

    field: str
    message: str
    value: Any = None
    index: int | None = None


class ValidationResult(BaseModel):
    """Outcome of a validation pass."""

    is_valid: bool = True
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)

    @classmethod
    def build(cls, errors: list[ValidationIssue], warnings: list[ValidationIssue]) -> "ValidationResult":
        """Build a result whose validity follows from ``errors``."""
        return cls(is_valid=not errors, errors=errors, warnings=warnings)


def is_valid_color(color: str) -> bool:
    """Check for a hex color (#RGB, #RRGGBB or #RRGGBBAA)."""
    return bool(HEX_COLOR_RE.match(color))


def parse_transaction_date(value: str) -> datetime | None:
    """Parse ``YYYY-MM-DD`` or ``YYYY-MM-DD HH:mm:ss``; ``None`` when invalid."""
    for pattern, fmt in DATE_FORMATS.items():
        if pattern.match(value):
            try:
                return datetime.strptime(value, fmt)  # noqa: DTZ007
            except ValueError:
                return None
    return None


def _is_number(value: object) -> bool:
    """Whether value is numeric, excluding booleans."""
    return isinstance(value, int | float | Decimal) and not isinstance(value, bool)


def _is_finite(value: int | float | Decimal) -> bool:
    """Finite check that never converts an int, which can overflow a float."""
    return isinstance(value, int) or math.isfinite(value)


class SyncValidator:
    """Structural and semantic checks for categories and transactions."""

    def __init__(self, settings: Settings | None = None) -> None:
        """Use the limits from ``settings``, or the application settings."""
        self.settings = settings or get_settings()

    def validate_sync_payload(self, payload: object) -> ValidationResult:
        """Validate a complete upload payload."""
        errors: list[ValidationIssue] = []
        warnings: list[ValidationIssue] = []

        if not isinstance(payload, Mapping):
            errors.append(ValidationIssue(field="payload", message="Sync payload must be an object", value=payload))
            return ValidationResult.build(errors, warnings)

        if payload.get("categories") is not None:
            result = self.validate_categories(payload["categories"])
            errors.extend(result.errors)
            warnings.extend(result.warnings)

        if payload.get("transactions") is not None:
            result = self.validate_transactions(payload["transactions"])
            errors.extend(result.errors)
            warnings.extend(result.warnings)

        size = len(json.dumps(payload, default=str).encode("utf-8"))
        limit = self.settings.max_payload_bytes
        if size > limit:
            errors.append(
                ValidationIssue(field="payload", message=f"Payload too large: {size} bytes (max: {limit})", value=size)
            )
        elif size > limit * SIZE_WARNING_RATIO:
            warnings.append(
                ValidationIssue(field="payload", message=f"Payload approaching size limit: {size} bytes", value=size)
            )

        return ValidationResult.build(errors, warnings)

    def validate_categories(self, categories: object) -> ValidationResult:
        """Validate a categories list, flagging duplicate names as warnings."""
        errors: list[ValidationIssue] = []
        warnings: list[ValidationIssue] = []

        if not isinstance(categories, list):
            errors.append(
                ValidationIssue(
                    field="categories", message="Categories must be an array", value=type(categories).__name__
                )
            )
            return ValidationResult.build(errors, warnings)

        limit = self.settings.max_categories_per_sync
        if len(categories) > limit:
            errors.append(
                ValidationIssue(
                    field="categories",
                    message=f"Too many categories: {len(categories)} (max: {limit})",
                    value=len(categories),
                )
            )
        elif len(categories) > limit * SIZE_WARNING_RATIO:
            warnings.append(
                ValidationIssue(
                    field="categories",
                    message=f"Approaching category limit: {len(categories)} (max: {limit})",
                    value=len(categories),
                )
            )

        seen_names: set[str] = set()
        for index, category in enumerate(categories):
            errors.extend(self.validate_single_category(category, index))
            name = category.get("name") if isinstance(category, Mapping) else None
            if isinstance(name, str) and name.strip():
                normalized = name.strip().lower()
                if normalized in seen_names:
                    warnings.append(
                        ValidationIssue(
                            field="categories",
                            message=f'Duplicate category name: "{name}"',
                            value=name,
                            index=index,
                        )
                    )
                else:
                    seen_names.add(normalized)

        return ValidationResult.build(errors, warnings)

    def validate_single_category(self, category: object, index: int | None = None) -> list[ValidationIssue]:
        """Validate one category; ``index`` locates it in its batch."""
        if not isinstance(category, Mapping):
            return [
                ValidationIssue(field="category", message="Category must be an object", value=category, index=index)
            ]

        errors: list[ValidationIssue] = []
        name = category.get("name")
        min_len = self.settings.category_name_min_length
        max_len = self.settings.category_name_max_length
        message = None
        if name is None or name == "":
            message = "Category name is required"
        elif not isinstance(name, str):
            message = "Category name must be a string"
        elif len(name.strip()) < min_len:
            message = f"Category name too short: {len(name.strip())} characters (min: {min_len})"
        elif len(name) > max_len:
            message = f"Category name too long: {len(name)} characters (max: {max_len})"
        if message:
            errors.append(ValidationIssue(field="category.name", message=message, value=name, index=index))

        color = category.get("color")
        if color is not None:
            if not isinstance(color, str):
                errors.append(
                    ValidationIssue(
                        field="category.color", message="Category color must be a string", value=color, index=index
                    )
                )
            elif not is_valid_color(color):
                errors.append(
                    ValidationIssue(
                        field="category.color",
                        message="Category color must be a valid hex color",
                        value=color,
                        index=index,
                    )
                )
        return errors

    def validate_transactions(self, transactions: object) -> ValidationResult:
        """Validate a transactions list, flagging look-alike entries as duplicates."""
        errors: list[ValidationIssue] = []
        warnings: list[ValidationIssue] = []

        if not isinstance(transactions, list):
            errors.append(
                ValidationIssue(
                    field="transactions", message="Transactions must be an array", value=type(transactions).__name__
                )
            )
            return ValidationResult.build(errors, warnings)

        limit = self.settings.max_transactions_per_sync
        if len(transactions) > limit:
            errors.append(
                ValidationIssue(
                    field="transactions",
                    message=f"Too many transactions: {len(transactions)} (max: {limit})",
                    value=len(transactions),
                )
            )
        elif len(transactions) > limit * SIZE_WARNING_RATIO:
            warnings.append(
                ValidationIssue(
                    field="transactions",
                    message=f"Approaching transaction limit: {len(transactions)} (max: {limit})",
                    value=len(transactions),
                )
            )

        seen: set[tuple] = set()
        for index, transaction in enumerate(transactions):
            errors.extend(self.validate_single_transaction(transaction, index))
            if not isinstance(transaction, Mapping):
                continue
            amount = transaction.get("amount")
            date = transaction.get("date")
            if amount is None or not date:
                continue
            type_key = transaction.get("type") or TRANSACTION_TYPE_IDS.get(transaction.get("typeId"))
            key = (str(amount), str(date), transaction.get("description") or "", type_key)
            if key in seen:
                warnings.append(
                    ValidationIssue(
                        field="transactions",
                        message="Potential duplicate transaction detected",
                        value=f"Amount: {amount}, Date: {date}",
                        index=index,
                    )
                )
            else:
                seen.add(key)

        return ValidationResult.build(errors, warnings)

    def validate_single_transaction(self, transaction: object, index: int | None = None) -> list[ValidationIssue]:
        """Validate one transaction; ``index`` locates it in its batch."""
        if not isinstance(transaction, Mapping):
            return [
                ValidationIssue(
                    field="transaction", message="Transaction must be an object", value=transaction, index=index
                )
            ]

        errors: list[ValidationIssue] = []

        def add(field: str, message: str, value: object) -> None:
            errors.append(ValidationIssue(field=f"transaction.{field}", message=message, value=value, index=index))

        amount = transaction.get("amount")
        low = self.settings.transaction_amount_min
        high = self.settings.transaction_amount_max
        if amount is None:
            add("amount", "Transaction amount is required", amount)
        elif not _is_number(amount) or not _is_finite(amount):
            add("amount", "Transaction amount must be a valid number", amount)
        elif amount < low:
            add("amount", f"Transaction amount too small: {amount} (min: {low})", amount)
        elif amount > high:
            add("amount", f"Transaction amount too large: {amount} (max: {high})", amount)

        type_name = transaction.get("type")
        type_id = transaction.get("typeId")
        has_type_name = isinstance(type_name, str) and bool(type_name)
        has_type_id = type_id is not None and not isinstance(type_id, bool)
        if not has_type_name and not has_type_id:
            add("type", "Transaction type or typeId is required", type_name if type_name is not None else type_id)
        elif has_type_name and type_name not in TRANSACTION_TYPES:
            add("type", 'Transaction type must be "income" or "expense"', type_name)
        elif not has_type_name and type_id not in TRANSACTION_TYPE_IDS:
            errors.append(
                ValidationIssue(
                    field="transaction.typeId",
                    message=f"Transaction typeId must be one of {sorted(TRANSACTION_TYPE_IDS)}",
                    value=type_id,
                    index=index,
                )
            )

        date = transaction.get("date")
        if not date:
            add("date", "Transaction date is required", date)
        elif not isinstance(date, str) or parse_transaction_date(date) is None:
            add("date", "Transaction date must be in YYYY-MM-DD or YYYY-MM-DD HH:mm:ss format", date)

        description = transaction.get("description")
        max_len = self.settings.transaction_description_max_length
        if description is not None:
            if not isinstance(description, str):
                add("description", "Transaction description must be a string", description)
            elif len(description) > max_len:
                add(
                    "description",
                    f"Transaction description too long: {len(description)} characters (max: {max_len})",
                    description,
                )

        categories = transaction.get("categories")
        if categories is not None:
            if not isinstance(categories, list):
                add("categories", "Transaction categories must be an array", categories)
            else:
                for position, category in enumerate(categories):
                    if not isinstance(category, str) or not category.strip():
                        add(
                            "categories",
                            f"Invalid category at index {position}: must be a non-empty string",
                            category,
                        )
        return errors

    def validate_downloaded_data(self, data: object) -> ValidationResult:
        """Validate a remote snapshot before it hydrates a local store."""
        errors: list[ValidationIssue] = []
        warnings: list[ValidationIssue] = []
        if not isinstance(data, Mapping):
            errors.append(
                ValidationIssue(field="downloadedData", message="Downloaded data must be an object", value=data)
            )
            return ValidationResult.build(errors, warnings)

        for kind, check in (("categories", self.validate_categories), ("transactions", self.validate_transactions)):
            if kind not in data:
                errors.append(
                    ValidationIssue(
                        field=f"downloadedData.{kind}", message=f"Downloaded data must include {kind} field"
                    )
                )
                continue
            result = check(data[kind])
            errors.extend(result.errors)
            warnings.extend(result.warnings)
        return ValidationResult.build(errors, warnings)


def validate_user_id(user_id: object) -> ValidationResult:
    """Check that a user id is a non-blank string."""
    errors: list[ValidationIssue] = []
    if not user_id:
        errors.append(ValidationIssue(field="userId", message="User ID is required", value=user_id))
    elif not isinstance(user_id, str):
        errors.append(ValidationIssue(field="userId", message="User ID must be a string", value=user_id))
    elif not user_id.strip():
        errors.append(ValidationIssue(field="userId", message="User ID cannot be empty", value=user_id))
    return ValidationResult.build(errors, [])


def validate_sync_job_type(job_type: object) -> ValidationResult:
    """Check that a job type is one the worker can run."""
    errors: list[ValidationIssue] = []
    if not job_type:
        errors.append(ValidationIssue(field="jobType", message="Job type is required", value=job_type))
    elif job_type not in JOB_TYPES:
        errors.append(
            ValidationIssue(
                field="jobType",
                message=f"Invalid job type: {job_type} (valid types: {', '.join(JOB_TYPES)})",
                value=job_type,
            )
        )
    return ValidationResult.build(errors, [])


def validate_sync_payload(payload: object) -> ValidationResult:
    """Validate a payload with the limits from application settings."""
    return SyncValidator().validate_sync_payload(payload)


class ValidationResultFormatter:
    """Human-readable renderings of a :class:`ValidationResult`."""

    @staticmethod
    def _format(issues: list[ValidationIssue]) -> list[str]:
        """Render issues as 1-based ``Item N`` lines."""
        return [
            f"Item {issue.index + 1}: {issue.message}" if issue.index is not None else issue.message
            for issue in issues
        ]

    @classmethod
    def format_errors(cls, result: ValidationResult) -> list[str]:
        """Human-readable error lines."""
        return cls._format(result.errors)

    @classmethod
    def format_warnings(cls, result: ValidationResult) -> list[str]:
        """Human-readable warning lines."""
        return cls._format(result.warnings)

    @staticmethod
    def summary(result: ValidationResult) -> str:
        """One-line count of errors and warnings."""
        warning_count = len(result.warnings)
        if result.is_valid:
            return f"Validation passed with {warning_count} warning(s)" if warning_count else "Validation passed"
        text = f"Validation failed with {len(result.errors)} error(s)"
        if warning_count:
            text += f" and {warning_count} warning(s)"
        return text


def validate_or_raise(data: object, validator: Callable[[object], ValidationResult], context: str) -> ValidationResult:
    """Run ``validator`` and raise a ``VALIDATION`` :class:`SyncError` when it fails.

    Warnings are logged and the result is returned so callers can inspect them.
    """
    result = validator(data)
    if not result.is_valid:
        messages = ValidationResultFormatter.format_errors(result)
        summary = ValidationResultFormatter.summary(result)
        logger.error(f"Validation failed for {context}: {summary}: {messages}")
        raise SyncError(
            f"{context} validation failed: {'; '.join(messages)}",
            SyncErrorType.VALIDATION,
            details={
                "errors": [issue.model_dump(mode="json") for issue in result.errors],
                "warnings": [issue.model_dump(mode="json") for issue in result.warnings],
                "summary": summary,
            },
        )
    if result.warnings:
        logger.warning(f"Validation warnings for {context}: {ValidationResultFormatter.format_warnings(result)}")
    return result
