"""Incremental synchronization window and the historical-data latch.

SyncWindowCalculator answers "from when should the next run fetch records?"
(the watermark) and owns the one-way historical-data latch that decides
whether records dated before the connector was linked may ever be fetched.

Watermark precedence (first match wins):
1. updated_at of the last complete successful run
2. created_at of the first run, unless historical data sharing was granted
3. the organization's date_filtering_limit
4. None -- full backfill

Latch states are derived from the persisted fields:
- HISTORICAL_ENABLED: historical_data is true
- CUTOFF_SET: historical_data is false and date_filtering_limit is set
- UNDECIDED: neither
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum

import structlog

from src.connector.core.monitoring import historical_data_transitions_total
from src.connector.organizations.repository import OrganizationRepository
from src.connector.organizations.schemas import Organization
from src.connector.sync.history import SynchronizationHistory

logger = structlog.get_logger(__name__)


class HistoricalDataState(str, Enum):
    """State of an organization's historical-data latch."""

    UNDECIDED = "undecided"
    HISTORICAL_ENABLED = "historical_enabled"
    CUTOFF_SET = "cutoff_set"


# ── Latch Transition Rules ────────────────────────────────────────────────────

# Maps each state to the set of states it can move TO.
# HISTORICAL_ENABLED is terminal: historical sharing cannot be revoked.
ALLOWED_TRANSITIONS: dict[HistoricalDataState, set[HistoricalDataState]] = {
    HistoricalDataState.UNDECIDED: {
        HistoricalDataState.HISTORICAL_ENABLED,
        HistoricalDataState.CUTOFF_SET,
    },
    HistoricalDataState.CUTOFF_SET: {HistoricalDataState.HISTORICAL_ENABLED},
    HistoricalDataState.HISTORICAL_ENABLED: set(),
}


def historical_state(organization: Organization) -> HistoricalDataState:
    """Derive the latch state from historical_data and date_filtering_limit."""
    if organization.historical_data:
        return HistoricalDataState.HISTORICAL_ENABLED
    if organization.date_filtering_limit is not None:
        return HistoricalDataState.CUTOFF_SET
    return HistoricalDataState.UNDECIDED


def apply_historical_choice(
    organization: Organization,
    enabled: bool,
    now: datetime,
) -> tuple[HistoricalDataState, HistoricalDataState]:
    """Apply a historical-data choice to an organization in memory.

    Returns (from_state, to_state); they are equal when the choice is a no-op
    (already in the target state, or the transition is not allowed).
    """
    current = historical_state(organization)
    target = HistoricalDataState.HISTORICAL_ENABLED if enabled else HistoricalDataState.CUTOFF_SET

    if target not in ALLOWED_TRANSITIONS[current]:
        return current, current

    if target is HistoricalDataState.HISTORICAL_ENABLED:
        organization.date_filtering_limit = None
        organization.historical_data = True
    elif organization.date_filtering_limit is None:
        organization.date_filtering_limit = now

    return current, target


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncWindowCalculator:
    """Watermark calculation and historical-data latch.

    Args:
        history: Run-log queries.
        organizations: Repository used for the locked latch toggle.
        clock: Returns the current time; date_filtering_limit is set from it.
    """

    def __init__(
        self,
        history: SynchronizationHistory,
        organizations: OrganizationRepository,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._history = history
        self._organizations = organizations
        self._clock = clock

    async def watermark(self, organization: Organization) -> datetime | None:
        """Start of the next incremental synchronization window, None for a full backfill."""
        last_success = await self._history.last_successful(organization)
        if last_success is not None:
            return last_success.updated_at

        if not organization.historical_data:
            first_run = await self._history.first_run_timestamp(organization)
            if first_run is not None:
                return first_run

        return organization.date_filtering_limit

    def state(self, organization: Organization) -> HistoricalDataState:
        return historical_state(organization)

    async def enable_historical_data(self, organization: Organization, enabled: bool) -> Organization:
        """Record the organization's historical-data choice.

        enabled=True opens the latch for good (clearing any cutoff).
        enabled=False freezes the cutoff at the first call's timestamp.
        Choices that do not move the latch are silent no-ops. The caller's
        object is refreshed with the stored values.

        Raises:
            OrganizationNotFoundError: If the organization no longer exists.
            PersistenceError: If the store fails.
        """
        async with self._organizations.locked(organization.tenant, organization.id) as current:
            from_state, to_state = apply_historical_choice(current, enabled, self._clock())

        organization.historical_data = current.historical_data
        organization.date_filtering_limit = current.date_filtering_limit

        if from_state is to_state:
            logger.debug(
                "historical_data.unchanged",
                tenant=organization.tenant,
                organization_id=organization.id,
                state=from_state.value,
                requested=enabled,
            )
        else:
            historical_data_transitions_total.labels(
                from_state=from_state.value,
                to_state=to_state.value,
            ).inc()
            logger.info(
                "historical_data.transition",
                tenant=organization.tenant,
                organization_id=organization.id,
                from_state=from_state.value,
                to_state=to_state.value,
                date_filtering_limit=(
                    current.date_filtering_limit.isoformat() if current.date_filtering_limit else None
                ),
            )
        return current
