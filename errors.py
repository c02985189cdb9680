"""Error taxonomy, raised as HTTP exceptions so routes can let them propagate."""
from typing import Any, Dict, List

from fastapi import HTTPException
from pydantic import ValidationError


class NotFound(HTTPException):
    def __init__(self, detail: str = "Not found"):
        super().__init__(status_code=404, detail=detail)


class Forbidden(HTTPException):
    def __init__(self, detail: str = "Forbidden"):
        super().__init__(status_code=403, detail=detail)


class InvalidState(HTTPException):
    """The request conflicts with current state; the caller must change it."""

    def __init__(self, detail: str):
        super().__init__(status_code=400, detail=detail)


class AlreadyCompleted(InvalidState):
    def __init__(self):
        super().__init__("Module already completed")


def field_errors(errors: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {"field": ".".join(str(p) for p in e.get("loc", ())), "message": e.get("msg", "")}
        for e in errors
    ]


class ValidationFailed(HTTPException):
    def __init__(self, exc: ValidationError, message: str = "Validation failed"):
        super().__init__(
            status_code=400,
            detail={"message": message, "errors": field_errors(exc.errors())},
        )
