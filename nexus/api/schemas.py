"""Request and response bodies for the HTTP surface (camelCase on the wire)."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from nexus.db.models import GraphEdge, GraphNode, Project, Turn
from nexus.providers.base import ProviderName


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class TurnRequestBody(WireModel):
    project_id: UUID
    provider: ProviderName
    model: str = Field(min_length=1)
    user_text: str = Field(min_length=1)


class ProjectCreateBody(WireModel):
    name: str = Field(min_length=1, max_length=200)


class ProjectOut(WireModel):
    id: str
    name: str
    created_at: datetime

    @classmethod
    def of(cls, project: Project) -> "ProjectOut":
        return cls.model_validate(project)


class ProjectListOut(WireModel):
    projects: list[ProjectOut]


class TurnUpdateBody(WireModel):
    user_text: str | None = Field(default=None, min_length=1)
    assistant_text: str | None = Field(default=None, min_length=1)

    @model_validator(mode="after")
    def _require_change(self) -> "TurnUpdateBody":
        if self.user_text is None and self.assistant_text is None:
            raise ValueError("No updates provided")
        return self


class CompressionOut(WireModel):
    aggressiveness: float | None
    max_output_tokens: int | None
    min_output_tokens: int | None
    input_tokens: int | None
    output_tokens: int | None
    ratio: float | None
    time_ms: float | None


class InjectedContextOut(WireModel):
    turn_id: str
    project_id: str
    injected_context_text: str
    compression: CompressionOut | None = None

    @classmethod
    def of(cls, turn: Turn) -> "InjectedContextOut":
        compression = None
        if turn.compression_aggressiveness is not None:
            compression = CompressionOut(
                aggressiveness=turn.compression_aggressiveness,
                max_output_tokens=turn.compression_max_output_tokens,
                min_output_tokens=turn.compression_min_output_tokens,
                input_tokens=turn.compression_input_tokens,
                output_tokens=turn.compression_output_tokens,
                ratio=turn.compression_ratio,
                time_ms=turn.compression_time_ms,
            )
        return cls(
            turn_id=turn.id,
            project_id=turn.project_id,
            injected_context_text=turn.injected_context_text,
            compression=compression,
        )


class TurnOut(WireModel):
    id: str
    project_id: str
    provider: str
    model: str
    user_text: str
    assistant_text: str
    latency_ms: int | None = None
    provider_request_id: str | None = None
    created_at: datetime


class NodeOut(WireModel):
    id: str
    project_id: str
    turn_id: str
    title: str | None
    summary: str
    pinned: bool
    user_edited: bool
    deleted_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def of(cls, node: GraphNode) -> "NodeOut":
        return cls.model_validate(node)


class NodeDetailOut(WireModel):
    node: NodeOut
    turn: TurnOut


class NodeUpdateBody(WireModel):
    title: str | None = Field(default=None, max_length=200)
    summary: str | None = Field(default=None, min_length=1)
    pinned: bool | None = None

    @model_validator(mode="after")
    def _require_change(self) -> "NodeUpdateBody":
        if self.title is None and self.summary is None and self.pinned is None:
            raise ValueError("No updates provided")
        return self


class EdgeOut(WireModel):
    id: str
    src_node_id: str
    dst_node_id: str
    rel_type: str
    weight: float

    @classmethod
    def of(cls, edge: GraphEdge) -> "EdgeOut":
        return cls.model_validate(edge)


class GraphViewOut(WireModel):
    project_id: str
    nodes: list[NodeOut]
    edges: list[EdgeOut]


class StatusOut(WireModel):
    status: str
