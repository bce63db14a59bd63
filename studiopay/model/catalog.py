from typing import Dict, Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import norm_email
from .db import Service, User


# ----------------------------
# Service catalog
# ----------------------------
async def services_by_id(db: AsyncSession,
                         ids: Iterable[str]) -> Dict[str, Service]:
    ids = [i for i in set(ids) if i]
    if not ids:
        return {}
    result = await db.execute(select(Service).where(Service.id.in_(ids)))
    return {s.id: s for s in result.scalars().all()}


async def bump_order_counts(db: AsyncSession, items: list) -> None:
    for it in items:
        sid = it.get("service_id")
        if not sid:
            continue
        await db.execute(
            update(Service)
            .where(Service.id == sid)
            .values(order_count=Service.order_count + int(it["quantity"]))
            .execution_options(synchronize_session=False)
        )


# ----------------------------
# User directory
# ----------------------------
async def find_user_by_email(db: AsyncSession,
                             email: Optional[str]) -> Optional[User]:
    email = norm_email(email)
    if not email:
        return None
    result = await db.execute(
        select(User).where(func.lower(User.email) == email)
    )
    return result.scalars().first()


async def get_user(db: AsyncSession, user_id: Optional[str]) -> Optional[User]:
    if not user_id:
        return None
    return await db.get(User, user_id)
