from __future__ import annotations

import uuid

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from nexuscrm.context import get_organization_id
from nexuscrm.core.database import Database
from nexuscrm.crm.models import Contact


async def _count_contacts(db: Database) -> int:
    async def _count(session: AsyncSession):
        return await session.scalar(select(func.count()).select_from(Contact))

    return await db.query(_count)


async def test_query_with_context_commits_and_returns_callback_result(db: Database) -> None:
    organization_id = uuid.uuid4()

    async def _insert(session: AsyncSession):
        contact = Contact(organization_id=organization_id, first_name="Ada")
        session.add(contact)
        await session.flush()
        return contact.id

    contact_id = await db.query_with_context(organization_id, _insert)

    assert isinstance(contact_id, uuid.UUID)
    assert await _count_contacts(db) == 1


async def test_query_with_context_rolls_back_when_callback_raises(db: Database) -> None:
    organization_id = uuid.uuid4()

    async def _insert_then_fail(session: AsyncSession):
        session.add(Contact(organization_id=organization_id, first_name="Grace"))
        await session.flush()
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        await db.query_with_context(organization_id, _insert_then_fail)

    assert await _count_contacts(db) == 0


async def test_tenant_context_is_visible_inside_and_cleared_after(db: Database) -> None:
    organization_id = uuid.uuid4()
    seen: list[str | None] = []

    async def _capture(session: AsyncSession):
        seen.append(get_organization_id())

    await db.query_with_context(organization_id, _capture)

    assert seen == [str(organization_id)]
    assert get_organization_id() is None


async def test_health_check_and_pool_status(db: Database) -> None:
    assert await db.health_check() is True
    assert db.pool_status()["class"] == "StaticPool"
    assert db.dialect_name == "sqlite"
