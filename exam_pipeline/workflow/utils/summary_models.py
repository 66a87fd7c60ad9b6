from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def from_value(cls, value: Optional[str | "Confidence"]) -> "Confidence":
        if isinstance(value, cls):
            return value
        if value is None or value == "":
            return cls.MEDIUM
        normalized = str(value).strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        return cls.MEDIUM


class Workflow(BaseModel):
    name: str = Field(..., description="Short name of the process being described")
    steps: List[str] = Field(default_factory=list, description="Ordered steps of the process")
    notes: Optional[str] = Field(None, description="Caveats or remarks about the process")


class Definition(BaseModel):
    term: str
    definition: str


class ChunkSummary(BaseModel):
    chunk_id: str = Field(..., description="Id of the TextChunk this summary belongs to")
    title: str = Field("", description="Topic title for the chunk")
    summary: str = Field(..., min_length=1, description="Prose summary of the chunk")
    key_points: List[str] = Field(default_factory=list)
    workflows: List[Workflow] = Field(default_factory=list)
    definitions: List[Definition] = Field(default_factory=list)
    examples: List[str] = Field(default_factory=list)
    exam_pointers: List[str] = Field(default_factory=list)
    confidence: Confidence = Field(default=Confidence.MEDIUM)

    @field_validator("chunk_id", mode="before")
    @classmethod
    def _coerce_chunk_id(cls, value):
        return str(value) if value is not None else value

    @field_validator("confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, value):
        return Confidence.from_value(value)

    @field_validator("key_points", "examples", "exam_pointers", mode="before")
    @classmethod
    def _drop_blank_items(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        return [str(item).strip() for item in value if str(item).strip()]

    @property
    def is_low_confidence(self) -> bool:
        return self.confidence == Confidence.LOW


__all__ = ["Confidence", "Workflow", "Definition", "ChunkSummary"]
