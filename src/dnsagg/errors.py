"""dnsagg error hierarchy.

All store exceptions inherit from StoreError and carry the name of the
operation that failed, so a log line always says which pipeline stage broke.

Hierarchy:
    StoreError
    ├── StoreConnectionError     # unreachable store or auth failure
    ├── SchemaError              # DDL failure during init
    ├── IngestError              # read, staging, load or merge failure for one batch
    ├── QueryError               # read failures, passed through to callers
    ├── UnsupportedOperation     # not available on this backing engine
    └── StoreTimeoutError        # client-side timeout; safe to retry
    ConfigError                  # invalid configuration file
"""

from __future__ import annotations

from typing import Optional


class StoreError(Exception):
    """Brief: Base class for all backend errors.

    Inputs (constructor):
      - operation: Name of the store operation that failed (for example,
        "update", "find_tuples").
      - message: Human-readable detail.

    Outputs:
      - Exception whose str() is "<operation>: <message>".
    """

    retriable = False

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        self.message = message
        super().__init__(f"{operation}: {message}")


class StoreConnectionError(StoreError):
    """The store could not be reached or rejected our credentials."""


class SchemaError(StoreError):
    """Creating the permanent tables failed."""


class IngestError(StoreError):
    """Brief: A batch failed while reading, staging, loading or merging.

    Inputs (constructor):
      - operation: Store operation name.
      - message: Detail text.
      - stage: Pipeline stage that failed (for example, "load-tuples").

    Outputs:
      - IngestError with a ``stage`` attribute; str() includes the stage.
    """

    def __init__(self, operation: str, message: str, stage: Optional[str] = None) -> None:
        self.stage = stage
        if stage:
            message = f"{stage} failed: {message}"
        super().__init__(operation, message)


class QueryError(StoreError):
    """A read query failed."""


class UnsupportedOperation(StoreError):
    """The backing engine does not provide this operation."""


class StoreTimeoutError(StoreError):
    """A call exceeded its client-side timeout."""

    retriable = True


class ConfigError(Exception):
    """Configuration file missing, unreadable or invalid."""
