"""Tests for payload validation and its formatting."""

import pytest

from app.core.errors import SyncError, SyncErrorType
from app.core.settings import Settings
from app.core.validation import (
    SyncValidator,
    ValidationResultFormatter,
    is_valid_color,
    parse_transaction_date,
    validate_or_raise,
    validate_sync_job_type,
    validate_user_id,
)


def _transaction(**overrides: object) -> dict:
    data = {"amount": 12.5, "type": "expense", "date": "2025-09-01", "description": "Lunch"}
    data.update(overrides)
    return data


@pytest.fixture
def validator(settings: Settings) -> SyncValidator:
    return SyncValidator(settings)


def test_valid_payload_passes(validator: SyncValidator) -> None:
    payload = {
        "categories": [{"name": "Food", "color": "#FF0000"}, {"name": "Rent", "color": "#abc"}],
        "transactions": [_transaction(categories=["Food"]), _transaction(amount=900, type="income", date="2025-09-02")],
    }
    result = validator.validate_sync_payload(payload)
    if not result.is_valid:
        msg = f"Expected a valid payload, got errors {result.errors}"
        raise AssertionError(msg)
    if result.warnings:
        msg = f"Expected no warnings, got {result.warnings}"
        raise AssertionError(msg)


def test_amount_out_of_range_is_reported_at_its_index(validator: SyncValidator) -> None:
    transactions = [_transaction(), _transaction(date="2025-09-02"), _transaction(amount=0)]
    result = validator.validate_sync_payload({"transactions": transactions})
    if result.is_valid:
        msg = "Expected amount 0 to be rejected"
        raise AssertionError(msg)
    amount_errors = [issue for issue in result.errors if issue.field == "transaction.amount"]
    if [issue.index for issue in amount_errors] != [2]:
        msg = f"Expected one amount error at index 2, got {amount_errors}"
        raise AssertionError(msg)


@pytest.mark.parametrize("amount", [1_000_000_000, 10**400, -5, True, "12.50", float("nan"), float("inf")])
def test_bad_amounts_are_rejected(validator: SyncValidator, amount: object) -> None:
    errors = validator.validate_single_transaction(_transaction(amount=amount), 0)
    if not any(issue.field == "transaction.amount" for issue in errors):
        msg = f"Expected amount {amount!r} to be rejected, got {errors}"
        raise AssertionError(msg)


def test_type_id_is_accepted_in_place_of_type(validator: SyncValidator) -> None:
    transaction = _transaction(typeId=1)
    del transaction["type"]
    if validator.validate_single_transaction(transaction, 0):
        msg = "Expected typeId 1 to be accepted"
        raise AssertionError(msg)
    transaction["typeId"] = 7
    errors = validator.validate_single_transaction(transaction, 0)
    if [issue.field for issue in errors] != ["transaction.typeId"]:
        msg = f"Expected an unknown typeId to be rejected, got {errors}"
        raise AssertionError(msg)


@pytest.mark.parametrize("date", ["2025-02-30", "01/09/2025", "2025-09-01T10:00:00", ""])
def test_bad_dates_are_rejected(validator: SyncValidator, date: str) -> None:
    errors = validator.validate_single_transaction(_transaction(date=date), 0)
    if not any(issue.field == "transaction.date" for issue in errors):
        msg = f"Expected date {date!r} to be rejected"
        raise AssertionError(msg)


def test_transaction_date_formats() -> None:
    if parse_transaction_date("2025-09-01 13:45:00") is None:
        msg = "Expected a date-time to parse"
        raise AssertionError(msg)
    if parse_transaction_date("2025-09-01").hour != 0:
        msg = "Expected a date-only value to parse at midnight"
        raise AssertionError(msg)


def test_category_checks(validator: SyncValidator) -> None:
    result = validator.validate_categories([{"name": ""}, {"name": "x" * 101}, {"name": "Food", "color": "red"}])
    fields = [(issue.field, issue.index) for issue in result.errors]
    expected = [("category.name", 0), ("category.name", 1), ("category.color", 2)]
    if fields != expected:
        msg = f"Expected {expected}, got {fields}"
        raise AssertionError(msg)
    if not (is_valid_color("#A1b2C3") and is_valid_color("#A1b2C3ff") and not is_valid_color("#12")):
        msg = "Unexpected hex color check result"
        raise AssertionError(msg)


def test_duplicates_are_warnings_not_errors(validator: SyncValidator) -> None:
    payload = {
        "categories": [{"name": "Food"}, {"name": " food "}],
        "transactions": [_transaction(), _transaction()],
    }
    result = validator.validate_sync_payload(payload)
    if not result.is_valid:
        msg = f"Duplicates must not be errors, got {result.errors}"
        raise AssertionError(msg)
    if [(issue.field, issue.index) for issue in result.warnings] != [("categories", 1), ("transactions", 1)]:
        msg = f"Expected one duplicate warning per kind, got {result.warnings}"
        raise AssertionError(msg)


def test_size_limits() -> None:
    validator = SyncValidator(Settings(max_categories_per_sync=2, max_payload_bytes=200))
    result = validator.validate_sync_payload({"categories": [{"name": f"Category {i}"} for i in range(3)]})
    messages = [issue.message for issue in result.errors]
    if not any(message.startswith("Too many categories") for message in messages):
        msg = f"Expected a category count error, got {messages}"
        raise AssertionError(msg)
    big = {"transactions": [_transaction(description="x" * 300)]}
    messages = [issue.message for issue in validator.validate_sync_payload(big).errors]
    if not any(message.startswith("Payload too large") for message in messages):
        msg = f"Expected a payload size error, got {messages}"
        raise AssertionError(msg)


def test_structural_errors(validator: SyncValidator) -> None:
    if validator.validate_sync_payload(["not", "a", "dict"]).is_valid:
        msg = "Expected a list payload to be rejected"
        raise AssertionError(msg)
    result = validator.validate_sync_payload({"categories": "Food"})
    if [issue.field for issue in result.errors] != ["categories"]:
        msg = f"Expected a categories type error, got {result.errors}"
        raise AssertionError(msg)


def test_downloaded_data_requires_both_kinds(validator: SyncValidator) -> None:
    result = validator.validate_downloaded_data({"categories": []})
    if [issue.field for issue in result.errors] != ["downloadedData.transactions"]:
        msg = f"Expected a missing transactions error, got {result.errors}"
        raise AssertionError(msg)


def test_user_id_and_job_type() -> None:
    if validate_user_id("   ").is_valid or validate_user_id(None).is_valid:
        msg = "Expected blank user ids to be rejected"
        raise AssertionError(msg)
    if not validate_user_id("U1").is_valid:
        msg = "Expected U1 to be a valid user id"
        raise AssertionError(msg)
    if validate_sync_job_type("weekly").is_valid or not validate_sync_job_type("full_sync").is_valid:
        msg = "Unexpected job type validation result"
        raise AssertionError(msg)


def test_formatter_numbers_items_from_one(validator: SyncValidator) -> None:
    result = validator.validate_transactions([_transaction(), _transaction(amount=0, date="2025-09-03")])
    lines = ValidationResultFormatter.format_errors(result)
    if not lines or not lines[0].startswith("Item 2: Transaction amount too small"):
        msg = f"Unexpected formatted errors {lines}"
        raise AssertionError(msg)
    if ValidationResultFormatter.summary(result) != "Validation failed with 1 error(s)":
        msg = f"Unexpected summary {ValidationResultFormatter.summary(result)}"
        raise AssertionError(msg)


def test_validate_or_raise(validator: SyncValidator) -> None:
    with pytest.raises(SyncError) as excinfo:
        validate_or_raise({"categories": [{"color": "#FFF"}]}, validator.validate_sync_payload, "Upload data")
    error = excinfo.value
    if error.type is not SyncErrorType.VALIDATION or error.retryable:
        msg = f"Expected a non-retryable validation error, got {error.type}"
        raise AssertionError(msg)
    if error.details["errors"][0]["field"] != "category.name":
        msg = f"Expected the errors in details, got {error.details}"
        raise AssertionError(msg)
    result = validate_or_raise({"categories": [{"name": "Food"}]}, validator.validate_sync_payload, "Upload data")
    if not result.is_valid:
        msg = "Expected a valid result to be returned"
        raise AssertionError(msg)
