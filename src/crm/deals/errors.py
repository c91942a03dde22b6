"""Domain errors raised by the CRM repository and mapped to HTTP by the API."""

from __future__ import annotations


class CrmError(Exception):
    """Base class for CRM domain errors."""


class RecordNotFoundError(CrmError, LookupError):
    """A record addressed by id does not exist."""

    def __init__(self, entity: str, record_id: int) -> None:
        self.entity = entity
        self.record_id = record_id
        super().__init__(f"{entity} not found: {record_id}")


class FieldValidationError(CrmError, ValueError):
    """A request field failed a check that needs the store (existence, uniqueness)."""

    def __init__(self, field: str, message: str, error_type: str = "value_error") -> None:
        self.field = field
        self.message = message
        self.error_type = error_type
        super().__init__(f"{field}: {message}")

    def to_detail(self) -> list[dict]:
        """Per-field error list in the same shape as request validation errors."""
        return [{"loc": ["body", self.field], "msg": self.message, "type": self.error_type}]
