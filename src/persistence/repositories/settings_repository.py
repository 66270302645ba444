"""
Settings Repository
===================
"""

from typing import Optional

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from scanning.models import Settings

from ..models import SettingsRecord

SETTINGS_ROW_ID = 1


class SettingsRepository:
    """Single-row settings storage."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self) -> Optional[Settings]:
        record = await self.session.get(SettingsRecord, SETTINGS_ROW_ID)
        if record is None:
            return None
        return Settings(
            history_retention_days=record.history_retention_days,
            auto_start_scanning=record.auto_start_scanning,
            last_cleanup=record.last_cleanup,
        )

    async def save(self, settings: Settings) -> Settings:
        await self.session.merge(SettingsRecord(
            id=SETTINGS_ROW_ID,
            history_retention_days=settings.history_retention_days,
            auto_start_scanning=settings.auto_start_scanning,
            last_cleanup=settings.last_cleanup,
        ))
        return settings

    async def clear(self) -> None:
        await self.session.execute(delete(SettingsRecord))
