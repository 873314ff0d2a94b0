"""
Database models for the generation pipeline.

These tables hold the slice of the workflow graph the pipeline touches:
- projects: graph containers
- nodes: graph nodes; `meta` carries job pointers and artifact lists
- edges: directed links between nodes
- assets: files stored in project storage
- integrations: provider credentials managed by administrators
"""
import uuid
from datetime import datetime, timezone


def utc_now():
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string (the format stored in node meta)."""
    return utc_now().isoformat()


from sqlalchemy import (
    Column, String, Text, Boolean,
    DateTime, ForeignKey, ForeignKeyConstraint, Index, JSON,
)
from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


class NodeType(enum.Enum):
    """Node types the pipeline creates or inspects."""
    TEXT = "text"
    AI = "ai"
    IMAGE = "image"
    VIDEO = "video"
    FOLDER = "folder"


# Node types whose content is a media URL rather than descriptive text
MEDIA_NODE_TYPES = frozenset({NodeType.IMAGE.value, NodeType.VIDEO.value})


class Project(Base):
    """A workflow graph."""
    __tablename__ = "projects"

    project_id = Column(String(64), primary_key=True, default=lambda: uuid.uuid4().hex)
    title = Column(Text, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class Node(Base):
    """
    A graph node.

    `meta` is the free-form metadata column. The pipeline reads and writes:
    - output_folder_id: pointer to the folder node that collects results
    - artifacts: stored artifact records (folder and source node)
    - <provider>_job_id / <provider>_status: last job handle and status
    - prompt_modifiers: user-entered `--flag value` lines

    `ui` holds layout; `ui["bbox"]` is {x1, y1, x2, y2}.
    """
    __tablename__ = "nodes"

    project_id = Column(String(64), ForeignKey("projects.project_id", ondelete="CASCADE"), primary_key=True)
    node_id = Column(String(100), primary_key=True)

    type = Column(String(50), nullable=False, default=NodeType.TEXT.value)
    title = Column(Text, nullable=False, default="")
    content = Column(Text)
    meta = Column(JSON, nullable=False, default=dict)
    ui = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('idx_nodes_project_type', project_id, type),
    )


class Edge(Base):
    """Directed edge from one node to another within a project."""
    __tablename__ = "edges"

    project_id = Column(String(64), primary_key=True)
    from_node = Column(String(100), primary_key=True)
    to_node = Column(String(100), primary_key=True)
    label = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        ForeignKeyConstraint(
            [project_id, from_node], [Node.project_id, Node.node_id], ondelete="CASCADE"
        ),
        ForeignKeyConstraint(
            [project_id, to_node], [Node.project_id, Node.node_id], ondelete="CASCADE"
        ),
        Index('idx_edges_to', project_id, to_node),
    )


class Asset(Base):
    """A file in project storage, registered against the node that owns it."""
    __tablename__ = "assets"

    asset_id = Column(String(64), primary_key=True, default=lambda: uuid.uuid4().hex)
    project_id = Column(String(64), ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False)
    node_id = Column(String(100))
    path = Column(Text, nullable=False)  # Relative to the project storage directory
    asset_meta = Column("meta", JSON, nullable=False, default=dict)  # mime_type, size, job_id, source_url
    created_at = Column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        Index('idx_assets_project_node', project_id, node_id),
    )


class Integration(Base):
    """
    Provider credentials.

    Config schemas by provider:
    - midjourney_mindworkflow_relay: {"baseUrl"|"relayUrl": "...", "apiKey"|"authToken": "...", "midjourney_mode": "photo"|"video"}
    - google_ai_studio: {"apiKey": "...", "baseUrl": "...", "models": [...], "extra": {"model", "mode", "maxOutputs"}}
    """
    __tablename__ = "integrations"

    integration_id = Column(String(64), primary_key=True, default=lambda: uuid.uuid4().hex)
    provider = Column(String(100), nullable=False)
    name = Column(String(255))
    user_id = Column(String(64))
    config = Column(JSON, nullable=False, default=dict)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('idx_integrations_provider_updated', provider, updated_at),
    )
