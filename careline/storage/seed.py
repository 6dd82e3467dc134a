"""Directory fixtures for local runs and tests."""

from collections.abc import Iterable

from careline.domain.models import UserProfile
from careline.storage.sql import SqlStore
from careline.storage.tables import CaregiverLinkRow, UserRow


async def add_users(store: SqlStore, users: Iterable[UserProfile]) -> None:
    async with store.session() as session:
        for user in users:
            await session.merge(
                UserRow(
                    id=user.id,
                    name=user.name,
                    role=user.role.value,
                    email=user.email,
                    phone=user.phone,
                )
            )
        await session.commit()


async def link_caregiver(
    store: SqlStore,
    elder_id: str,
    caregiver_id: str,
    relationship: str | None = None,
    is_active: bool = True,
) -> None:
    async with store.session() as session:
        await session.merge(
            CaregiverLinkRow(
                elder_id=elder_id,
                caregiver_id=caregiver_id,
                relationship=relationship,
                is_active=is_active,
            )
        )
        await session.commit()
