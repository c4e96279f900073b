"""Pydantic models for the Expense Sync service.

This module defines the sync payloads and results exchanged with clients and
stored on jobs. Job payloads and results are typed per job type: see
:data:`PAYLOAD_MODELS` and :data:`RESULT_MODELS`.
"""

from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer, model_validator

from app.core.utils import parse_timestamp


class JobType(StrEnum):
    UPLOAD = "upload"
    DOWNLOAD = "download"
    FULL_SYNC = "full_sync"


class JobStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class TransactionType(StrEnum):
    INCOME = "income"
    EXPENSE = "expense"


TRANSACTION_TYPE_BY_ID = {1: TransactionType.INCOME, 2: TransactionType.EXPENSE}


class CategoryIn(BaseModel):
    """A category as sent by a device."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    name: str
    color: str | None = None
    created_at: Any = None
    updated_at: Any = None

    @property
    def modified_at(self) -> datetime | None:
        """Modification time, falling back to creation time."""
        return parse_timestamp(self.updated_at) or parse_timestamp(self.created_at)


class TransactionIn(BaseModel):
    """A transaction as sent by a device. ``typeId`` is accepted in place of ``type``."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str | None = None
    amount: Decimal
    type: TransactionType | None = None
    type_id: int | None = Field(default=None, alias="typeId")
    date: str
    description: str | None = None
    categories: list[str] = Field(default_factory=list)
    created_at: Any = None
    updated_at: Any = None

    @model_validator(mode="after")
    def resolve_type(self) -> "TransactionIn":
        """Fill ``type`` from ``typeId`` and require one of them."""
        if self.type is None:
            if self.type_id not in TRANSACTION_TYPE_BY_ID:
                msg = "Transaction type or a known typeId is required"
                raise ValueError(msg)
            self.type = TRANSACTION_TYPE_BY_ID[self.type_id]
        return self

    @field_serializer("amount", when_used="json")
    def serialize_amount(self, amount: Decimal) -> float:
        """Render the amount as a JSON number."""
        return float(amount)

    @property
    def modified_at(self) -> datetime | None:
        """Modification time, falling back to creation time."""
        return parse_timestamp(self.updated_at) or parse_timestamp(self.created_at)


class UploadPayload(BaseModel):
    categories: list[CategoryIn] = Field(default_factory=list)
    transactions: list[TransactionIn] = Field(default_factory=list)

    @property
    def total_items(self) -> int:
        """Number of items the job will sync."""
        return len(self.categories) + len(self.transactions)


class DownloadPayload(BaseModel):
    """Downloads carry no data."""

    @property
    def total_items(self) -> int:
        """Downloads carry no items."""
        return 0


class FullSyncPayload(UploadPayload):
    pass


JobPayload = UploadPayload | DownloadPayload | FullSyncPayload

PAYLOAD_MODELS: dict[JobType, type[BaseModel]] = {
    JobType.UPLOAD: UploadPayload,
    JobType.DOWNLOAD: DownloadPayload,
    JobType.FULL_SYNC: FullSyncPayload,
}


def parse_payload(job_type: JobType | str, raw: dict | None) -> JobPayload:
    """Parse a stored payload into the model for its job type."""
    return PAYLOAD_MODELS[JobType(job_type)].model_validate(raw or {})


class SyncItemError(BaseModel):
    """Failure of a single item inside a batch. ``index`` is 0-based."""

    item: str
    index: int
    error: str
    error_type: str


class SyncResult(BaseModel):
    created: int = 0
    updated: int = 0
    errors: list[SyncItemError] = Field(default_factory=list)


class SyncResults(BaseModel):
    categories: SyncResult = Field(default_factory=SyncResult)
    transactions: SyncResult = Field(default_factory=SyncResult)


class CategoryOut(BaseModel):
    id: str
    user_id: str
    name: str
    color: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TransactionOut(BaseModel):
    id: str
    user_id: str
    amount: float
    type: TransactionType
    date: str
    description: str = ""
    categories: list[str] = Field(default_factory=list)
    category_names: list[str] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class UserData(BaseModel):
    categories: list[CategoryOut] = Field(default_factory=list)
    transactions: list[TransactionOut] = Field(default_factory=list)


class UploadResults(BaseModel):
    upload: SyncResults


class DownloadResults(BaseModel):
    download: UserData


class FullSyncResults(BaseModel):
    upload: SyncResults
    download: UserData
    timestamp: str


JobResults = UploadResults | DownloadResults | FullSyncResults

RESULT_MODELS: dict[JobType, type[BaseModel]] = {
    JobType.UPLOAD: UploadResults,
    JobType.DOWNLOAD: DownloadResults,
    JobType.FULL_SYNC: FullSyncResults,
}


def parse_results(job_type: JobType | str, raw: dict | None) -> JobResults | None:
    """Parse stored results into the model for its job type."""
    if raw is None:
        return None
    return RESULT_MODELS[JobType(job_type)].model_validate(raw)


class SyncStatus(BaseModel):
    """Snapshot of what the remote store holds for a user."""

    categories_count: int
    transactions_count: int
    last_sync: datetime | None = None
    server_time: str


class Job(BaseModel):
    """Pydantic view of a sync job row."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    job_type: JobType
    status: JobStatus
    progress: int = 0
    total_items: int = 0
    processed_items: int = 0
    payload: dict | None = None
    results: dict | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        """Whether the job has finished, successfully or not."""
        return self.status in TERMINAL_STATUSES

    def typed_payload(self) -> JobPayload:
        """The stored payload parsed into the model for this job type."""
        return parse_payload(self.job_type, self.payload)

    def typed_results(self) -> JobResults | None:
        """The stored results parsed into the model for this job type, if any."""
        return parse_results(self.job_type, self.results)

    def summary(self, *, include_results: bool = True) -> dict[str, Any]:
        """Client-facing view without the (possibly large) payload."""
        data = self.model_dump(mode="json", exclude={"payload"})
        if not include_results:
            data.pop("results")
        return data
