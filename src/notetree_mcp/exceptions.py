"""Custom exceptions for the NoteTree MCP server.

Provides a structured exception hierarchy with error codes and
machine-readable error information. Every error also carries a
``category`` so callers can tell a structural violation (do not retry)
from a transient failure (safe to retry) from a stale reference.
"""
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Node errors (1xxx)
    NODE_NOT_FOUND = 1001
    PROJECT_NOT_FOUND = 1002
    NODE_VALIDATION_FAILED = 1003

    # Tree structure errors (2xxx)
    TREE_CYCLE = 2001
    INVALID_PARENT = 2002
    CROSS_SCOPE_PARENT = 2003
    INVALID_PLACEMENT = 2004
    PROJECT_LOCKED = 2005

    # Ordering errors (3xxx)
    NORMALIZATION_FAILED = 3001
    INVALID_ORDER_KEY = 3002

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    STORAGE_DELETE_FAILED = 4003
    STORAGE_TRANSIENT = 4004

    # Import errors (45xx)
    IMPORT_RECORD_INVALID = 4501
    IMPORT_ABORTED = 4502
    IMPORT_NOT_FOUND = 4503

    # Configuration errors (6xxx)
    CONFIG_INVALID = 6001

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001


class NoteTreeError(Exception):
    """Base exception for all NoteTree errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    category = "validation"

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.category == "transient"

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "category": self.category,
            "retryable": self.retryable,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class NotFoundError(NoteTreeError):
    """Raised when a node or project referenced by the caller does not exist."""

    category = "not_found"

    def __init__(
        self,
        entity_id: str,
        entity: str = "node",
        message: Optional[str] = None,
    ):
        code = (
            ErrorCode.PROJECT_NOT_FOUND
            if entity == "project"
            else ErrorCode.NODE_NOT_FOUND
        )
        super().__init__(
            message or f"{entity.capitalize()} with ID '{entity_id}' not found",
            code=code,
            details={f"{entity}_id": entity_id},
        )
        self.entity_id = entity_id
        self.entity = entity


class CycleError(NoteTreeError):
    """Raised when a reparent would make a node its own ancestor."""

    category = "structural"

    def __init__(self, node_id: str, parent_id: str, message: Optional[str] = None):
        super().__init__(
            message
            or f"Moving '{node_id}' under '{parent_id}' would create a cycle",
            code=ErrorCode.TREE_CYCLE,
            details={"node_id": node_id, "parent_id": parent_id},
        )
        self.node_id = node_id
        self.parent_id = parent_id


class InvalidParentError(NoteTreeError):
    """Raised when a parent is missing, belongs to another project, or does
    not match the placement anchor."""

    category = "structural"

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        parent_id: Optional[str] = None,
        code: ErrorCode = ErrorCode.INVALID_PARENT,
    ):
        details = {}
        if node_id:
            details["node_id"] = node_id
        if parent_id:
            details["parent_id"] = parent_id
        super().__init__(message, code=code, details=details)
        self.node_id = node_id
        self.parent_id = parent_id


class ProjectLockedError(NoteTreeError):
    """Raised when a mutation targets a locked project."""

    category = "structural"

    def __init__(self, project_id: str, operation: Optional[str] = None):
        details = {"project_id": project_id}
        if operation:
            details["operation"] = operation
        super().__init__(
            f"Project '{project_id}' is locked",
            code=ErrorCode.PROJECT_LOCKED,
            details=details,
        )
        self.project_id = project_id
        self.operation = operation


class StorageError(NoteTreeError):
    """Raised for persistence errors that are not worth retrying."""

    category = "storage"

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.original_error = original_error


class TransientStoreError(StorageError):
    """Raised for I/O failures that may succeed on retry (lock contention,
    timeouts, dropped connections)."""

    category = "transient"

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message,
            operation=operation,
            code=ErrorCode.STORAGE_TRANSIENT,
            original_error=original_error,
        )


class NormalizationFailure(NoteTreeError):
    """Raised when a sibling group could not be renumbered.

    The group keeps its previous keys; normalizing again later is safe.
    """

    category = "transient"

    def __init__(
        self,
        project_id: str,
        parent_id: Optional[str],
        original_error: Optional[Exception] = None,
    ):
        details = {"project_id": project_id, "parent_id": parent_id or "ROOT"}
        if original_error:
            details["original_error"] = str(original_error)[:200]
        super().__init__(
            f"Could not normalize children of {parent_id or 'ROOT'} "
            f"in project '{project_id}'",
            code=ErrorCode.NORMALIZATION_FAILED,
            details=details,
        )
        self.project_id = project_id
        self.parent_id = parent_id
        self.original_error = original_error


class ValidationError(NoteTreeError):
    """Raised for general validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value


class ImportAbortedError(NoteTreeError):
    """Raised when an import cannot start or cannot continue at all.

    Per-record failures never raise; they are collected in the import's
    failure log instead.
    """

    category = "storage"

    def __init__(
        self,
        message: str,
        project_id: str,
        import_id: Optional[str] = None,
        failures: Optional[List[str]] = None,
        original_error: Optional[Exception] = None,
    ):
        details: Dict[str, Any] = {"project_id": project_id}
        if import_id:
            details["import_id"] = import_id
        if original_error:
            details["original_error"] = str(original_error)[:200]
        super().__init__(message, code=ErrorCode.IMPORT_ABORTED, details=details)
        self.project_id = project_id
        self.import_id = import_id
        self.failures: List[str] = list(failures) if failures else []
        self.original_error = original_error
