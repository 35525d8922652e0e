"""
Feature flag domain exceptions.

Every admin-operation failure is one of these and carries a machine-readable
``code`` plus the HTTP status the control plane answers with.
"""


class FlagError(Exception):
    """Base exception for all feature flag errors."""

    status_code = 500

    def __init__(self, message: str, code: str = "FLAG_ERROR"):
        self.message = message
        self.code = code
        super().__init__(self.message)


class ValidationError(FlagError):
    """Bad flag_key format, out-of-range percentage, missing required field."""

    status_code = 400

    def __init__(self, message: str, field_name: str = None, code: str = "VALIDATION_ERROR"):
        super().__init__(message, code=code)
        self.field_name = field_name


class ImmutableFieldError(ValidationError):
    """Raised when attempting to modify a field fixed at creation (flag_key)."""

    def __init__(self, field_name: str, entity_type: str = "Feature flag"):
        message = f"{entity_type} {field_name} cannot be modified after creation"
        super().__init__(message, field_name=field_name, code="IMMUTABLE_FIELD")
        self.entity_type = entity_type


class ConflictError(FlagError):
    """Duplicate flag_key, kill on a non kill-switch flag, mutation of a terminal flag."""

    status_code = 409

    def __init__(self, message: str):
        super().__init__(message, code="CONFLICT")


class NotFoundError(FlagError):
    """Flag, override or tenant missing."""

    status_code = 404

    def __init__(self, entity_type: str, identifier: str):
        message = f"{entity_type} '{identifier}' not found"
        super().__init__(message, code="NOT_FOUND")
        self.entity_type = entity_type
        self.identifier = identifier


class ConfirmationRequiredError(FlagError):
    """Toggle blocked until the caller explicitly confirms."""

    status_code = 428

    def __init__(self, flag_key: str):
        message = f"Toggling '{flag_key}' requires confirmation"
        super().__init__(message, code="CONFIRMATION_REQUIRED")
        self.flag_key = flag_key


class ConfigurationError(FlagError):
    """Programming defect, e.g. a rollout strategy the engine cannot dispatch."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message, code="CONFIGURATION_ERROR")


class StorageError(FlagError):
    """Persistence layer failure."""

    status_code = 503

    def __init__(self, message: str):
        super().__init__(message, code="STORAGE_ERROR")
