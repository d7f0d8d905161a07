"""Response envelope shared by every endpoint."""

from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """{success, message, data?, error?}"""

    success: bool = True
    message: str
    data: T | None = None
    error: str | None = None
