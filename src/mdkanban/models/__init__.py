"""Pydantic models for mdkanban."""

from .events import BoardEvent

__all__ = ["BoardEvent"]
