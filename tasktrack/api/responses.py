from __future__ import annotations

from math import ceil
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

from tasktrack.domain.errors import ErrorCode

T = TypeVar("T")


class Envelope(BaseModel, Generic[T]):
    success: bool = True
    message: str
    data: T | None = None


class PageEnvelope(Envelope[list[T]], Generic[T]):
    page: int
    limit: int
    totalPages: int
    totalItems: int


def ok(message: str, data: Any = None) -> dict[str, Any]:
    return {"success": True, "message": message, "data": data}


def paged(message: str, data: list[Any], *, page: int, limit: int, total: int) -> dict[str, Any]:
    return {
        "success": True,
        "message": message,
        "data": data,
        "page": page,
        "limit": limit,
        "totalPages": ceil(total / limit) if total else 0,
        "totalItems": total,
    }


def error_body(code: ErrorCode | str, message: str, detail: dict[str, Any] | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {"success": False, "message": message, "error": str(code)}
    if detail:
        body["detail"] = detail
    return body
