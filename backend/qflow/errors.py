"""
Error taxonomy shared by all engine components.

Validation errors surface before anything executes. Node-level failure kinds
(ErrorKind) are recorded on NodeExecutionRecords rather than raised.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel


class ErrorKind(str, Enum):
    USER_CODE_ERROR = "UserCodeError"
    TYPE_VIOLATION = "TypeViolation"
    RESOURCE_EXCEEDED = "ResourceExceeded"
    SANDBOX_FAULT = "SandboxFault"
    TIMEOUT = "Timeout"
    PROVISION_TIMEOUT = "ProvisionTimeout"
    DEPENDENCY_INSTALL_ERROR = "DependencyInstallError"
    CANCELLED = "Cancelled"


# Kinds that are retried with a freshly provisioned sandbox
RETRYABLE_KINDS = frozenset({
    ErrorKind.RESOURCE_EXCEEDED,
    ErrorKind.SANDBOX_FAULT,
    ErrorKind.TIMEOUT,
    ErrorKind.PROVISION_TIMEOUT,
    ErrorKind.DEPENDENCY_INSTALL_ERROR,
})


class QflowError(Exception):
    """Base class for all engine errors."""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationIssue(BaseModel):
    code: str
    message: str
    instance_id: str | None = None
    port: str | None = None
    connection: str | None = None


class ValidationError(QflowError):
    """A workflow (or part of it) is invalid; nothing was executed."""


class WorkflowValidationError(ValidationError):
    """Raised by submit_run with the complete list of validation issues."""

    def __init__(self, issues: list[ValidationIssue], run_id: str | None = None):
        self.issues = issues
        self.run_id = run_id
        messages = "; ".join(i.message for i in issues)
        super().__init__(f"Workflow validation failed: {messages}")


# ---------------------------------------------------------------------------
# Registries
# ---------------------------------------------------------------------------


class DuplicateTypeError(QflowError):
    pass


class UnknownTypeError(QflowError):
    pass


class DuplicateNodeError(QflowError):
    pass


class UnknownNodeError(QflowError):
    pass


class NodeDefinitionError(QflowError):
    def __init__(self, message: str, errors: list[str] | None = None):
        self.errors = errors or []
        super().__init__(message)


class NodeInUseError(QflowError):
    def __init__(self, node_id: str, referenced_by: list[str]):
        self.node_id = node_id
        self.referenced_by = referenced_by
        super().__init__(
            f"Node definition '{node_id}' is in use by workflows or runs: {', '.join(referenced_by)}"
        )


class UnknownRunError(QflowError):
    pass


# ---------------------------------------------------------------------------
# Data flow
# ---------------------------------------------------------------------------


class CodecError(QflowError):
    pass


class TypeMismatchError(CodecError):
    def __init__(self, wire_type: str, expected_type: str):
        self.wire_type = wire_type
        self.expected_type = expected_type
        super().__init__(
            f"Value of type '{wire_type}' is not compatible with expected type '{expected_type}'"
        )


# ---------------------------------------------------------------------------
# Sandboxes
# ---------------------------------------------------------------------------


class SandboxFault(QflowError):
    """Environment-level failure: provisioning or communication broke."""

    kind = ErrorKind.SANDBOX_FAULT


class ProvisionTimeout(SandboxFault):
    kind = ErrorKind.PROVISION_TIMEOUT


class DependencyInstallError(SandboxFault):
    kind = ErrorKind.DEPENDENCY_INSTALL_ERROR

    def __init__(
        self,
        installed: list[str],
        failed: dict[str, str],
        installation_time_ms: int = 0,
    ):
        self.installed = installed
        self.failed = failed
        self.installation_time_ms = installation_time_ms
        super().__init__(
            "Dependency installation failed for: "
            + ", ".join(f"{name} ({reason})" for name, reason in failed.items())
        )

    def report(self) -> dict[str, Any]:
        return {
            "success": False,
            "installed_packages": self.installed,
            "failed_packages": [
                {"name": name, "error": reason} for name, reason in self.failed.items()
            ],
            "installation_time": self.installation_time_ms,
        }
