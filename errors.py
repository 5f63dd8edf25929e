"""errors.py

Typed failure reporting for membership and message operations.

Every core operation returns a ``Result`` instead of raising: callers branch on
``result.ok`` (or plain truthiness) and read ``result.error`` for the kind.
The HTTP and Socket.IO layers translate kinds with ``HTTP_STATUS``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

from flask import jsonify

T = TypeVar("T")


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    UNAUTHORIZED = "unauthorized"
    CONFLICT = "conflict"
    INVALID_INPUT = "invalid_input"


HTTP_STATUS = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INVALID_INPUT: 400,
}


@dataclass(frozen=True)
class Result(Generic[T]):
    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, detail: str | None = None) -> "Result[T]":
        return cls(error=kind, detail=detail)


def error_response(result: Result):
    """Flask response tuple for a failed result."""
    kind = result.error or ErrorKind.INVALID_INPUT
    body = {"error": kind.value}
    if result.detail:
        body["message"] = result.detail
    return jsonify(body), HTTP_STATUS[kind]
