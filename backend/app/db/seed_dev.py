"""Dev seeding helper - default policy categories."""

import asyncio

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.db.engine import get_async_engine
from backend.app.db.models import PolicyCategory

DEFAULT_CATEGORIES: list[tuple[str, str]] = [
    ("HR Policies", "General human resources policies"),
    ("Benefits", "Employee benefits and perks"),
    ("Remote Work", "Remote and hybrid work policies"),
    ("Time Off", "Vacation, sick leave and holidays"),
    ("Code of Conduct", "Workplace behavior and ethics"),
    ("Compliance", "Legal and regulatory requirements"),
    ("Training", "Learning and development programs"),
    ("Security", "Information and physical security"),
    ("General Policies", "Uncategorized company policies"),
]


async def seed_categories(session: AsyncSession) -> int:
    """Insert any missing default categories.

    Idempotent - safe to run multiple times.

    Returns:
        Number of categories created
    """
    result = await session.execute(select(PolicyCategory.name))
    existing = set(result.scalars().all())

    created = 0
    for name, description in DEFAULT_CATEGORIES:
        if name in existing:
            continue
        session.add(PolicyCategory(name=name, description=description))
        created += 1

    await session.commit()
    return created


async def main() -> None:
    async with AsyncSession(get_async_engine(), expire_on_commit=False) as session:
        created = await seed_categories(session)
    print(f"Seeded {created} policy categories")


if __name__ == "__main__":
    asyncio.run(main())
