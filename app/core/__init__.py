"""Core package: provides models, database helpers, settings, errors, validation and shared utilities."""

from .db import Base, create_session_factory, get_engine, init_db  # noqa: F401
from .errors import SyncError, SyncErrorType, classify, with_retry, with_timeout  # noqa: F401
from .models import Job, JobStatus, JobType  # noqa: F401
from .settings import Settings, get_settings  # noqa: F401
from .utils import get_logger  # noqa: F401
