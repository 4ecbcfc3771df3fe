from __future__ import annotations

from pydantic import BaseModel, Field

from .models import LabelSelector, UnitTemplate


class CreateSetRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=63, description="Set name (dns-safe)")
    namespace: str = Field("default", min_length=1, max_length=63)
    replicas: int | None = Field(None, ge=0, description="Desired units; omitted means 1")
    min_ready_seconds: int = Field(0, ge=0)
    delete_policy: str | None = Field(None, description="Oldest|Newest")
    selector: LabelSelector
    template: UnitTemplate
    labels: dict[str, str] = Field(default_factory=dict)


class ScaleRequest(BaseModel):
    replicas: int = Field(..., ge=0)
