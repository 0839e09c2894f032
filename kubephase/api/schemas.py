"""Pydantic response schemas for the HTTP API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    error: str
    detail: str = ""


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = ""


class ReadyResponse(BaseModel):
    ready: bool
    controllers: dict[str, bool] = Field(default_factory=dict)
    cache_synced: bool = True


class InformerInfo(BaseModel):
    kind: str
    objects: int
    synced: bool
    owners: list[str] = Field(default_factory=list)


class CacheSnapshot(BaseModel):
    """Dynamic cache informers and owner registrations."""

    informers: list[InformerInfo] = Field(default_factory=list)
    registrations: int = 0
