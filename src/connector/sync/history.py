"""Read-side view of an organization's synchronization runs."""

from __future__ import annotations

from datetime import datetime

from src.connector.organizations.repository import SynchronizationRepository
from src.connector.organizations.schemas import Organization, SynchronizationRun

FAILURE_STREAK = 3


class SynchronizationHistory:
    """Recency and success queries over the append-only run log.

    Never mutates runs. Organizations without runs yield None/False/[].

    Args:
        runs: Repository giving query access to synchronization runs.
    """

    def __init__(self, runs: SynchronizationRepository) -> None:
        self._runs = runs

    async def last_successful(self, organization: Organization) -> SynchronizationRun | None:
        """Most recent complete (SUCCESS, not partial) run by updated_at."""
        return await self._runs.last_successful(organization.id)

    async def last_three_failed(self, organization: Organization) -> bool:
        """True iff the three most recently created runs all ended in ERROR."""
        runs = await self._runs.most_recent(organization.id, FAILURE_STREAK)
        return len(runs) == FAILURE_STREAK and all(run.is_error for run in runs)

    async def first_run_timestamp(self, organization: Organization) -> datetime | None:
        """created_at of the organization's first run."""
        return await self._runs.first_created_at(organization.id)

    async def recent(self, organization: Organization, limit: int = 20) -> list[SynchronizationRun]:
        """Most recently created runs, newest first."""
        return await self._runs.most_recent(organization.id, limit)
