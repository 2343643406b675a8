from sqlalchemy import Column, String, DateTime, Integer, Text, JSON
from sqlalchemy.sql import func

from api.src.db.database import Base

class ProjectGroup(Base):
    __tablename__ = "project_groups"

    id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, default="")
    position = Column(Integer, nullable=False, default=0)
    project_ids = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

class GroupCatalog(Base):
    """Single row holding the revision of the whole group document."""

    __tablename__ = "group_catalog"

    id = Column(Integer, primary_key=True, default=1)
    revision = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

class BulkDeployment(Base):
    __tablename__ = "bulk_deployments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    module = Column(String(255), nullable=False)
    branch = Column(String(255), nullable=False)
    started = Column(DateTime(timezone=True), nullable=False)
    environments = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, server_default=func.now())
