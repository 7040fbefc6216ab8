"""Near-duplicate detection against already imported activities.

A single uploaded file is compared with a wide window (±120 s, ±10 %).
Multi-file and archive imports use a narrow one (±60 s, ±5 %). Each policy
is configured on its own.
"""

from datetime import datetime, timedelta
import logging
from typing import Any, List, Optional, Protocol, Sequence

from pydantic import BaseModel

from activity_ingestion.config import get_settings

logger = logging.getLogger(__name__)


class DuplicatePolicy(BaseModel):
    name: str
    time_window_seconds: int
    distance_tolerance: float


SINGLE_FILE_POLICY = DuplicatePolicy(name="single_file", time_window_seconds=120, distance_tolerance=0.10)
MULTI_FILE_POLICY = DuplicatePolicy(name="multi_file", time_window_seconds=60, distance_tolerance=0.05)


def single_file_policy() -> DuplicatePolicy:
    settings = get_settings()
    return DuplicatePolicy(
        name=SINGLE_FILE_POLICY.name,
        time_window_seconds=settings.SINGLE_FILE_DUPLICATE_WINDOW_SECONDS,
        distance_tolerance=settings.SINGLE_FILE_DUPLICATE_DISTANCE_TOLERANCE,
    )


def multi_file_policy() -> DuplicatePolicy:
    settings = get_settings()
    return DuplicatePolicy(
        name=MULTI_FILE_POLICY.name,
        time_window_seconds=settings.MULTI_FILE_DUPLICATE_WINDOW_SECONDS,
        distance_tolerance=settings.MULTI_FILE_DUPLICATE_DISTANCE_TOLERANCE,
    )


class ExistingActivity(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    start_date: datetime
    distance: float  # meters


class ActivityLookup(Protocol):
    async def find_in_window(
        self,
        start_from: datetime,
        start_to: datetime,
        distance_min: float,
        distance_max: float,
    ) -> Sequence[Any]:
        """Return stored activities whose start and distance fall in the given ranges."""
        ...


class BatchIndex:
    """In-memory lookup over activities accepted earlier in the same import."""

    def __init__(self) -> None:
        self._activities: List[ExistingActivity] = []

    def add(self, activity: ExistingActivity) -> None:
        self._activities.append(activity)

    async def find_in_window(
        self,
        start_from: datetime,
        start_to: datetime,
        distance_min: float,
        distance_max: float,
    ) -> List[ExistingActivity]:
        return [
            activity for activity in self._activities
            if start_from <= activity.start_date <= start_to
            and distance_min <= activity.distance <= distance_max
        ]


class DuplicateDetector:
    def __init__(self, policy: DuplicatePolicy) -> None:
        self.policy = policy

    async def find_duplicate(
        self,
        start_time: datetime,
        distance_m: float,
        lookup: ActivityLookup,
    ) -> Optional[Any]:
        """Return an existing activity the candidate duplicates, or None.

        A failing lookup is logged and treated as "no duplicate" so that the
        import is never blocked by the lookup backend.
        """
        window = timedelta(seconds=self.policy.time_window_seconds)
        try:
            matches = await lookup.find_in_window(
                start_time - window,
                start_time + window,
                distance_m * (1 - self.policy.distance_tolerance),
                distance_m * (1 + self.policy.distance_tolerance),
            )
        except Exception as e:
            logger.error(f"Duplicate lookup failed, treating activity as new: {str(e)}")
            return None

        if matches:
            logger.debug(f"Found {len(matches)} duplicate candidates with {self.policy.name} policy")
            return matches[0]
        return None
