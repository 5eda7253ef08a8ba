# patchkeeper/models.py
"""
Store mirror models.

The production metadata store is owned by the update server; these models
mirror the fixed subset of its schema that maintenance touches, using the
server's own table and column names so the same statements run against
both the real store and local SQLite stores.

Tables:
- tbUpdate: one row per catalog update (LocalUpdateID is the store-local key)
- tbRevision: versioned instances of an update, carrying the lifecycle State
- tbRevisionSupersedesUpdate: supersession edges (revision -> superseded update)
- tbUpdateStatusPerComputer: per-computer installation status (very large)
- tbDeployment: install approvals per target group
"""

from datetime import datetime
from enum import IntEnum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import relationship

from patchkeeper.database import Base


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------

class RevisionState(IntEnum):
    """tbRevision.State values used by maintenance."""
    ACTIVE = 1
    DECLINED = 2
    SUPERSEDED = 3
    EXPIRED = 4


class DeploymentAction(IntEnum):
    """tbDeployment.ActionID values."""
    INSTALL = 0
    UNINSTALL = 1


# -----------------------------------------------------------------------------
# Tables
# -----------------------------------------------------------------------------

class UpdateRow(Base):
    __tablename__ = "tbUpdate"

    local_update_id = Column("LocalUpdateID", Integer, primary_key=True, autoincrement=True)
    update_id = Column("UpdateID", String(36), nullable=False, unique=True)
    title = Column("Title", String(512), nullable=False, default="")
    classification = Column("Classification", String(64), nullable=False, default="Updates")
    creation_date = Column("CreationDate", DateTime, nullable=False, default=datetime.utcnow)

    revisions = relationship("RevisionRow", back_populates="update")


class RevisionRow(Base):
    __tablename__ = "tbRevision"

    revision_id = Column("RevisionID", Integer, primary_key=True, autoincrement=True)
    local_update_id = Column("LocalUpdateID", Integer, ForeignKey("tbUpdate.LocalUpdateID"), nullable=False)
    revision_number = Column("RevisionNumber", Integer, nullable=False, default=1)
    state = Column("State", Integer, nullable=False, default=RevisionState.ACTIVE.value)
    is_latest_revision = Column("IsLatestRevision", Boolean, nullable=False, default=True)

    update = relationship("UpdateRow", back_populates="revisions")

    __table_args__ = (
        Index("ix_tbRevision_State", "State"),
        Index("ix_tbRevision_LocalUpdateID", "LocalUpdateID"),
    )


class SupersessionEdgeRow(Base):
    """A revision supersedes an update. Must never outlive its revision."""
    __tablename__ = "tbRevisionSupersedesUpdate"

    revision_id = Column("RevisionID", Integer, ForeignKey("tbRevision.RevisionID"), primary_key=True)
    superseded_update_id = Column("SupersededUpdateID", String(36), primary_key=True)


class StatusRecordRow(Base):
    __tablename__ = "tbUpdateStatusPerComputer"

    target_id = Column("TargetID", Integer, primary_key=True)
    local_update_id = Column("LocalUpdateID", Integer, primary_key=True)
    revision_id = Column("RevisionID", Integer, nullable=False)
    summarization_state = Column("SummarizationState", Integer, nullable=False, default=1)
    last_change_time = Column("LastChangeTime", DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_tbUpdateStatusPerComputer_Revision", "LocalUpdateID", "RevisionID"),
    )


class DeploymentRow(Base):
    __tablename__ = "tbDeployment"

    deployment_id = Column("DeploymentID", Integer, primary_key=True, autoincrement=True)
    revision_id = Column("RevisionID", Integer, ForeignKey("tbRevision.RevisionID"), nullable=False)
    target_group = Column("TargetGroupName", String(256), nullable=False)
    action_id = Column("ActionID", Integer, nullable=False, default=DeploymentAction.INSTALL.value)
    creation_date = Column("CreationDate", DateTime, nullable=False, default=datetime.utcnow)
