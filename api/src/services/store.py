"""
Persistence for project groups and the bulk deployment history.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from api.src.db.database import async_session
from api.src.models.group import BulkDeployment, GroupCatalog, ProjectGroup
from api.src.models.pipeline import default_environment_status
from api.src.models.schemas import DeploymentRecordOut, GroupIn, GroupOut
from api.src.services.errors import GroupRevisionConflictError, ValidationFailedError

logger = logging.getLogger(__name__)

CATALOG_ID = 1

def _unique(ids: List[int]) -> List[int]:
    return list(dict.fromkeys(ids))

def validate_groups(groups: List[GroupIn]):
    """Reject duplicate group ids; warn about projects listed in several groups."""
    ids = [g.id for g in groups]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        raise ValidationFailedError(f"Duplicate group ids: {duplicates}")

    owner: Dict[int, str] = {}
    for group in groups:
        for project_id in group.project_ids:
            if project_id in owner and owner[project_id] != group.name:
                logger.warning(
                    f"Project {project_id} is in both {owner[project_id]!r} and {group.name!r}"
                )
            owner[project_id] = group.name

def _to_group(row: ProjectGroup) -> GroupOut:
    return GroupOut(
        id=row.id,
        name=row.name,
        description=row.description or "",
        project_ids=list(row.project_ids or []),
    )

class GroupStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _ensure_catalog(self) -> GroupCatalog:
        catalog = await self.session.get(GroupCatalog, CATALOG_ID)
        if catalog is not None:
            return catalog

        try:
            self.session.add(GroupCatalog(id=CATALOG_ID, revision=0))
            await self.session.commit()
        except IntegrityError:
            # Another writer created it first
            await self.session.rollback()
        return await self.session.get(GroupCatalog, CATALOG_ID, populate_existing=True)

    async def revision(self) -> int:
        catalog = await self._ensure_catalog()
        await self.session.refresh(catalog)
        return catalog.revision

    async def list_groups(self) -> List[GroupOut]:
        result = await self.session.execute(
            select(ProjectGroup).order_by(ProjectGroup.position, ProjectGroup.id)
        )
        return [_to_group(row) for row in result.scalars().all()]

    async def get_group(self, group_id: int) -> Optional[GroupOut]:
        row = await self.session.get(ProjectGroup, group_id)
        return _to_group(row) if row else None

    async def replace_all(self, groups: List[GroupIn], expected_revision: Optional[int] = None) -> int:
        """
        Replace the whole group document and return the new revision.

        With `expected_revision` the save only applies if nobody saved since
        that revision was read; otherwise GroupRevisionConflictError.
        Without it the last write wins.
        """
        validate_groups(groups)
        await self._ensure_catalog()

        bump = update(GroupCatalog).where(GroupCatalog.id == CATALOG_ID)
        if expected_revision is not None:
            bump = bump.where(GroupCatalog.revision == expected_revision)
        result = await self.session.execute(
            bump.values(revision=GroupCatalog.revision + 1).execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.session.rollback()
            raise GroupRevisionConflictError(expected_revision, await self.revision())

        existing = {
            row.id: row
            for row in (await self.session.execute(select(ProjectGroup))).scalars().all()
        }
        incoming_ids = {g.id for g in groups}

        for row_id, row in existing.items():
            if row_id not in incoming_ids:
                await self.session.delete(row)

        for position, group in enumerate(groups):
            row = existing.get(group.id)
            if row is None:
                row = ProjectGroup(id=group.id)
                self.session.add(row)
            row.name = group.name
            row.description = group.description
            row.position = position
            row.project_ids = _unique(group.project_ids)

        await self.session.commit()
        revision = await self.revision()
        logger.info(f"Saved {len(groups)} groups (revision {revision})")
        return revision

class DeploymentHistory:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_records(self, limit: Optional[int] = None) -> List[DeploymentRecordOut]:
        query = select(BulkDeployment).order_by(BulkDeployment.id.desc())
        if limit:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return [DeploymentRecordOut.model_validate(row) for row in result.scalars().all()]

    async def append(
        self,
        module: str,
        branch: str,
        started: datetime,
        environments: Optional[Dict[str, str]] = None,
    ) -> DeploymentRecordOut:
        record = BulkDeployment(
            module=module,
            branch=branch,
            started=started,
            environments=environments or default_environment_status(),
        )
        self.session.add(record)
        await self.session.commit()
        await self.session.refresh(record)
        logger.info(f"Recorded deployment {record.id}: {module} @ {branch}")
        return DeploymentRecordOut.model_validate(record)

async def load_groups() -> List[GroupOut]:
    """Read the group document in a session of its own."""
    async with async_session() as session:
        return await GroupStore(session).list_groups()
