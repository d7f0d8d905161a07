"""Pydantic schemas for API request/response models."""

from townplan.schemas.common import ApiResponse

__all__ = ["ApiResponse"]
