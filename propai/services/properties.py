from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from propai.core.errors import NotFoundError
from propai.models.property import Property
from propai.schemas.property import PropertyOut

log = logging.getLogger(__name__)

SEARCH_LIMIT = 5
REQUIRED_FIELDS = ("name", "address", "property_type", "status")


@dataclass
class ChunkInsertResult:
    inserted: list[PropertyOut] = field(default_factory=list)
    # [{"row": 0, "field": "database", "chunk": i, "message": ...}]
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def inserted_count(self) -> int:
        return len(self.inserted)


def _chunks(rows: list[dict[str, Any]], size: int) -> Iterable[list[dict[str, Any]]]:
    for i in range(0, len(rows), size):
        yield rows[i:i + size]


async def get_property(db: AsyncSession, *, tenant_id: str, property_id: str) -> Property:
    stmt = select(Property).where(Property.id == property_id, Property.tenant_id == tenant_id)
    row = (await db.execute(stmt)).scalar_one_or_none()
    if not row:
        # same answer for "missing" and "another tenant's"
        raise NotFoundError("Property not found")
    return row


async def list_properties(
    db: AsyncSession,
    *,
    tenant_id: str,
    limit: int = 50,
    offset: int = 0,
    status: str | None = None,
) -> tuple[list[Property], int]:
    conds = [Property.tenant_id == tenant_id]
    if status:
        conds.append(Property.status == status)

    total = (await db.execute(select(func.count()).select_from(Property).where(*conds))).scalar_one()
    stmt = (
        select(Property)
        .where(*conds)
        .order_by(Property.created_at.desc(), Property.id.desc())
        .limit(limit)
        .offset(offset)
    )
    rows = (await db.execute(stmt)).scalars().all()
    return list(rows), total


async def create_property(db: AsyncSession, *, tenant_id: str, actor_id: str, data: dict[str, Any]) -> Property:
    row = Property(tenant_id=tenant_id, created_by=actor_id, updated_by=actor_id, **data)
    db.add(row)
    await db.flush()
    return row


async def update_property(
    db: AsyncSession,
    *,
    tenant_id: str,
    property_id: str,
    actor_id: str,
    changes: dict[str, Any],
) -> Property:
    # last writer wins
    row = await get_property(db, tenant_id=tenant_id, property_id=property_id)
    for k, v in changes.items():
        if v is None and k in REQUIRED_FIELDS:
            continue
        setattr(row, k, v)
    row.updated_by = actor_id
    await db.flush()
    return row


async def archive_property(db: AsyncSession, *, tenant_id: str, property_id: str, actor_id: str) -> Property:
    return await update_property(
        db, tenant_id=tenant_id, property_id=property_id, actor_id=actor_id, changes={"status": "archived"}
    )


async def delete_property(db: AsyncSession, *, tenant_id: str, property_id: str) -> None:
    res = await db.execute(
        delete(Property).where(Property.id == property_id, Property.tenant_id == tenant_id)
    )
    if res.rowcount == 0:
        raise NotFoundError("Property not found")


async def create_properties_in_chunks(
    db: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str,
    rows: list[dict[str, Any]],
    chunk_size: int = 500,
) -> ChunkInsertResult:
    """
    Insert rows as draft properties, one transaction per chunk.

    A failing chunk is rolled back and reported; earlier and later chunks are unaffected.
    Chunks run in order.
    """
    out = ChunkInsertResult()

    for index, chunk in enumerate(_chunks(rows, chunk_size)):
        objs = [
            Property(
                tenant_id=tenant_id,
                status="draft",
                created_by=actor_id,
                updated_by=actor_id,
                **row,
            )
            for row in chunk
        ]
        try:
            db.add_all(objs)
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            log.warning("chunk insert failed tenant=%s chunk=%s rows=%s err=%s", tenant_id, index, len(chunk), e)
            out.errors.append(
                {
                    "row": 0,
                    "field": "database",
                    "chunk": index,
                    "message": f"Failed to insert chunk {index + 1} ({len(chunk)} rows)",
                }
            )
            continue

        out.inserted.extend(PropertyOut.model_validate(o) for o in objs)

    return out


async def search_properties(
    db: AsyncSession,
    *,
    tenant_id: str,
    query: str,
    limit: int = SEARCH_LIMIT,
) -> list[Property]:
    """
    Free-text match over name, address, type and descriptions.

    Archived properties are never offered. Falls back to the newest listings when no term matches.
    """
    terms = [t for t in (query or "").split() if t][:5]
    base = select(Property).where(Property.tenant_id == tenant_id, Property.status != "archived")

    if terms:
        conds = []
        for t in terms:
            like = f"%{t}%"
            conds.extend(
                [
                    Property.name.ilike(like),
                    Property.address.ilike(like),
                    Property.property_type.ilike(like),
                    Property.description.ilike(like),
                    Property.ai_description.ilike(like),
                ]
            )
        stmt = base.where(or_(*conds)).order_by(Property.created_at.desc()).limit(limit)
        rows = (await db.execute(stmt)).scalars().all()
        if rows:
            return list(rows)

    stmt = base.order_by(Property.created_at.desc()).limit(limit)
    return list((await db.execute(stmt)).scalars().all())
