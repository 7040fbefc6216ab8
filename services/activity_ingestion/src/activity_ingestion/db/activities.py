from datetime import datetime
import logging
from typing import Any, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from activity_ingestion.db.models import ImportedActivity
from activity_ingestion.duplicates import ExistingActivity

logger = logging.getLogger(__name__)

DATE_COLUMNS = ("start_date", "start_date_local")

class ActivityRepository:
    """Persists imported activities and answers duplicate lookups for one user."""

    def __init__(self, db: AsyncSession, user_id: Optional[str] = None) -> None:
        self.db = db
        self.user_id = user_id

    async def find_in_window(
        self,
        start_from: datetime,
        start_to: datetime,
        distance_min: float,
        distance_max: float,
    ) -> List[ExistingActivity]:
        query = select(ImportedActivity).where(
            ImportedActivity.start_date >= start_from,
            ImportedActivity.start_date <= start_to,
            ImportedActivity.distance >= distance_min,
            ImportedActivity.distance <= distance_max,
        )
        if self.user_id is not None:
            query = query.where(ImportedActivity.user_id == self.user_id)

        try:
            result = await self.db.execute(query.order_by(ImportedActivity.start_date).limit(1))
        except Exception:
            await self.db.rollback()
            raise
        return [
            ExistingActivity(
                id=activity.provider_activity_id,
                name=activity.name,
                start_date=activity.start_date,
                distance=activity.distance or 0.0,
            )
            for activity in result.scalars().all()
        ]

    async def save(self, record: dict[str, Any]) -> ImportedActivity:
        """Insert a normalized activity record.

        Args:
            record: Output of to_activity_record; ISO date strings are parsed
        """
        values = dict(record)
        for column in DATE_COLUMNS:
            if isinstance(values.get(column), str):
                values[column] = datetime.fromisoformat(values[column])
        if values.get("user_id") is None:
            values["user_id"] = self.user_id

        activity = ImportedActivity(**values)
        try:
            self.db.add(activity)
            await self.db.commit()
        except Exception as e:
            # the session is shared by the whole batch and must stay usable
            logger.error(f"Failed to store activity {activity.provider_activity_id}: {str(e)}")
            await self.db.rollback()
            raise
        logger.debug(f"Stored activity {activity.provider_activity_id} for user {activity.user_id}")
        return activity
