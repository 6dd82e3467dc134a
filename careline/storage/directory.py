"""
Read-only view of the user directory.

Users and caregiver relationships are managed elsewhere; the engine only
needs to know who an elder's active caregivers are and how to reach them.
"""

from typing import Protocol

import structlog
from sqlalchemy import select

from careline.domain.models import CaregiverContact, Role, UserProfile
from careline.storage.sql import SqlStore
from careline.storage.tables import CaregiverLinkRow, UserRow

logger = structlog.get_logger()


class Directory(Protocol):
    async def get_caregivers_of(self, elder_id: str) -> list[CaregiverContact]:
        """Caregivers with an active link to the elder."""
        ...

    async def get_user(self, user_id: str) -> UserProfile | None: ...

    async def get_elders_of(self, caregiver_id: str) -> list[UserProfile]:
        """Elders the caregiver is actively linked to."""
        ...


class SqlDirectory:
    """Directory over the `users` and `caregiver_links` tables."""

    def __init__(self, store: SqlStore) -> None:
        self.store = store
        self.logger = logger.bind(component="directory")

    async def get_caregivers_of(self, elder_id: str) -> list[CaregiverContact]:
        query = (
            select(UserRow, CaregiverLinkRow.relationship)
            .join(CaregiverLinkRow, CaregiverLinkRow.caregiver_id == UserRow.id)
            .where(
                CaregiverLinkRow.elder_id == elder_id,
                CaregiverLinkRow.is_active.is_(True),
            )
            .order_by(UserRow.name)
        )
        async with self.store.session() as session:
            rows = (await session.execute(query)).all()
        return [
            CaregiverContact(
                id=user.id,
                name=user.name,
                email=user.email,
                phone=user.phone,
                relationship=relationship,
            )
            for user, relationship in rows
        ]

    async def get_user(self, user_id: str) -> UserProfile | None:
        async with self.store.session() as session:
            row = await session.get(UserRow, user_id)
            return _profile(row) if row else None

    async def get_elders_of(self, caregiver_id: str) -> list[UserProfile]:
        query = (
            select(UserRow)
            .join(CaregiverLinkRow, CaregiverLinkRow.elder_id == UserRow.id)
            .where(
                CaregiverLinkRow.caregiver_id == caregiver_id,
                CaregiverLinkRow.is_active.is_(True),
            )
            .order_by(UserRow.name)
        )
        async with self.store.session() as session:
            rows = (await session.scalars(query)).all()
        return [_profile(row) for row in rows]


def _profile(row: UserRow) -> UserProfile:
    return UserProfile(
        id=row.id,
        name=row.name,
        role=Role(row.role),
        email=row.email,
        phone=row.phone,
    )
