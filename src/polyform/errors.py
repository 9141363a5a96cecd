from __future__ import annotations

from typing import Any


class PolyformError(Exception):
    pass


class FieldError(PolyformError):
    def __init__(self, field_id: str, message: str) -> None:
        super().__init__(f"{field_id}: {message}")
        self.field_id = field_id
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"field_id": self.field_id, "message": self.message}


class FieldValidationError(PolyformError):
    """Every failing field of one submission, collected before reporting."""

    def __init__(self, errors: list[FieldError]) -> None:
        super().__init__("; ".join(str(error) for error in errors))
        self.errors = errors

    def to_list(self) -> list[dict[str, str]]:
        return [error.to_dict() for error in self.errors]


class SchemaError(PolyformError):
    def __init__(self, messages: list[str]) -> None:
        super().__init__("; ".join(messages))
        self.messages = messages


class NotFoundError(PolyformError):
    def __init__(self, kind: str, key: Any) -> None:
        super().__init__(f"{kind} not found: {key}")
        self.kind = kind
        self.key = key


class StorageError(PolyformError):
    pass


class ConflictError(PolyformError):
    pass
