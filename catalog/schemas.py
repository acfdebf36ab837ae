"""Pydantic schemas for API request/response bodies."""

from typing import Optional, Literal
from pydantic import BaseModel


class CharacterOut(BaseModel):
    id: int
    name: Optional[str] = None
    status: Optional[str] = None
    species: Optional[str] = None
    gender: Optional[str] = None
    image: str
    origin: str = "Unknown"


class SyncReportOut(BaseModel):
    fetched: int
    created: int
    updated: int
    unchanged: int
    invalid: int
    failed: bool


class HealthcheckOut(BaseModel):
    status: Literal["ok", "degraded"]
    upstream_ok: bool
    db_ok: bool
    character_count: int


class ProblemDetail(BaseModel):
    """RFC 7807-style problem response (simplified)."""

    type: str = "about:blank"
    title: str
    status: int
    detail: Optional[str] = None
    instance: Optional[str] = None
