"""
Identity collaborator - who owns a CAPA, who hears about suspensions
"""
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.models.user import User, UserRole, UserStatus
from backend.models.branch import Branch
from backend.models.bck import BCK


async def get_active_audit_managers(db: AsyncSession) -> List[User]:
    result = await db.execute(
        select(User)
        .where(User.role == UserRole.AUDIT_MANAGER, User.status == UserStatus.ACTIVE)
        .order_by(User.id)
    )
    return list(result.scalars().all())


async def resolve_capa_assignee(db: AsyncSession, entity_type: str, entity_id: int) -> Optional[int]:
    """Branch/BCK CAPAs go to the site manager; supplier CAPAs to the first audit manager"""
    if entity_type == "branch":
        branch = await db.get(Branch, entity_id)
        return branch.manager_id if branch else None
    if entity_type == "bck":
        bck = await db.get(BCK, entity_id)
        return bck.manager_id if bck else None
    if entity_type == "supplier":
        managers = await get_active_audit_managers(db)
        return managers[0].id if managers else None
    return None
