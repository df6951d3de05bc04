"""Error taxonomy for api-test-quest.

Only ConfigurationError, SetupError and DatabaseError abort a run. SqlHookError
and TransportError are scoped to one group or test and end up in that test's
result. Assertion mismatches are never raised; they are FailureDetail records.
"""

from typing import Any


class QuestError(Exception):
    """Base exception for all api-test-quest errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(QuestError):
    """The test file is invalid or incomplete. Detected before any test runs."""


class SetupError(QuestError):
    """The system under test could not be started or never became ready."""


class DatabaseError(QuestError):
    """Database provisioning, migration or reset failed. Fatal to the run."""


class SqlHookError(QuestError):
    """A fixture statement failed."""

    def __init__(self, statement: str, cause: str):
        self.statement = statement
        self.cause = cause
        super().__init__(
            f"SQL statement failed: {cause}",
            details={"statement": statement},
        )

    def __str__(self) -> str:
        return f"{self.message} (statement: {self.statement})"


class TransportError(QuestError):
    """The HTTP request could not be completed (connection refused, timeout, ...)."""

    def __init__(self, method: str, url: str, cause: str):
        self.method = method
        self.url = url
        self.cause = cause
        super().__init__(
            f"{method} {url} failed: {cause}",
            details={"method": method, "url": url},
        )
