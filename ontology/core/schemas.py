"""
Ontology Engine - Pydantic Schemas
===================================

Validated option payloads for synthesis operations, observation input and
response shapes for the CLI's JSON output.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .models import (
    ConflictResolutionEnum,
    ObservationTypeEnum,
    PatternStatusEnum,
    PatternTypeEnum,
)


class MergeStrategy(str, Enum):
    CONCAT = "concat"
    DEDUPE = "dedupe"
    SUMMARIZE = "summarize"


# Base Schemas
class BaseSchema(BaseModel):
    model_config = ConfigDict(
        from_attributes=True, populate_by_name=True, str_strip_whitespace=True
    )


class TimestampMixin(BaseModel):
    created_at: datetime | None = None
    updated_at: datetime | None = None


# Operation options
class MergeOptions(BaseSchema):
    strategy: MergeStrategy = MergeStrategy.DEDUPE
    preserve_originals: bool = False
    new_kind: str | None = None
    extra_tags: list[str] = Field(default_factory=list)


class DistillOptions(BaseSchema):
    max_length: int | None = Field(default=None, gt=0)
    target_level: int = Field(default=3, ge=1, le=4)


class ConflictResolutionOptions(BaseSchema):
    merge_documents: bool = False
    keep_document: str | None = None


# Learning layer Schemas
class PatternResponse(BaseSchema, TimestampMixin):
    id: int
    pattern_type: PatternTypeEnum
    confidence: float
    document_ids: list[str]
    description: str | None = None
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="extra_data")
    status: PatternStatusEnum
    validated_at: datetime | None = None


class ConflictResponse(BaseSchema):
    id: int
    document_a_id: str
    document_b_id: str
    conflict_type: str
    description: str | None = None
    resolution: ConflictResolutionEnum
    resolved_document_id: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime | None = None


# Observation Schemas
class ObservationCreate(BaseSchema):
    content: str = Field(..., min_length=1)
    observation_type: ObservationTypeEnum = ObservationTypeEnum.CONVERSATION
    source_id: str | None = None
    metadata: dict[str, Any] | None = None


