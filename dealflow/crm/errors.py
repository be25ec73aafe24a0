from __future__ import annotations


class DealflowError(Exception):
    """Base class for domain errors raised by the pipeline engines."""

    code = "dealflow_error"


class NotFoundError(DealflowError):
    """Raised when a referenced deal, stage, pipeline or contact does not exist."""

    code = "not_found"

    def __init__(self, resource: str, resource_id: object) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found: {resource_id}")


class InvalidProgressionError(DealflowError):
    """Raised when a contact lifecycle move is not an edge of the progression graph."""

    code = "invalid_progression"

    def __init__(self, from_stage: str, to_stage: str) -> None:
        self.from_stage = from_stage
        self.to_stage = to_stage
        super().__init__(f"Invalid lifecycle progression from {from_stage} to {to_stage}")


class ValidationError(DealflowError):
    """Raised for input the engines refuse before running any domain logic."""

    code = "validation_error"

    def __init__(self, message: str, fields: list[str] | None = None) -> None:
        self.fields = sorted(set(fields or []))
        super().__init__(message)
