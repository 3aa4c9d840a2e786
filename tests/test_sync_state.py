"""Tests for OrganizationSyncState -- the per-organization entity permission map.

Uses the in-memory repository doubles from conftest. Covers initialize(),
reset() reconciliation (OR semantics, idempotence, legacy upgrade, drop/add),
the AND gating of can_push_to_local/can_push_to_external, displayable(), and
propagation of store failures.
"""

from __future__ import annotations

import asyncio

import pytest

from src.connector.entities.catalog import Contact, Invoice, Item, Payment
from src.connector.organizations.repository import OrganizationNotFoundError, PersistenceError
from src.connector.organizations.schemas import EntityCapabilities, OrganizationCreate
from src.connector.sync.state import (
    initial_synchronized_entities,
    reconcile_synchronized_entities,
)

TENANT = "tenant-test"


def _flags(organization) -> dict[str, tuple[bool, bool]]:
    return {
        key: (value.can_push_to_local, value.can_push_to_external)
        for key, value in organization.synchronized_entities.items()
    }


# ── initialize ────────────────────────────────────────────────────────────────


def test_initialize_sets_one_entry_per_registered_type(sync_state, registry):
    data = OrganizationCreate(uid="acme")
    sync_state.initialize(data)

    assert list(data.synchronized_entities) == registry.identifiers
    assert _flags(data) == {
        "contact": (True, True),
        "invoice": (True, True),
        "payment": (True, False),
        "journal": (True, True),
    }


def test_initial_synchronized_entities_empty_registry():
    from src.connector.entities.registry import EntityRegistry

    assert initial_synchronized_entities(EntityRegistry()) == {}


@pytest.mark.asyncio
async def test_created_organization_keeps_initialized_map(sync_state, organizations, registry):
    data = OrganizationCreate(uid="acme", name="  ")
    sync_state.initialize(data)
    organization = await organizations.create(TENANT, data)

    stored = await organizations.get(TENANT, organization.id)
    assert stored.name == "Default Group name"
    assert set(stored.synchronized_entities) == set(registry.identifiers)


# ── reset ─────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_reset_drops_unregistered_and_adds_new_types(sync_state, make_organization):
    organization = make_organization(
        synchronized_entities={
            "contact": {"can_push_to_local": True, "can_push_to_external": False},
            "obsolete": {"can_push_to_local": True, "can_push_to_external": True},
        }
    )

    await sync_state.reset(organization, default_enabled=False)

    assert _flags(organization) == {
        "contact": (True, False),
        "invoice": (False, False),
        "payment": (False, False),
        "journal": (False, False),
    }


@pytest.mark.asyncio
async def test_reset_with_default_enabled_turns_everything_on(sync_state, make_organization):
    organization = make_organization(
        synchronized_entities={"contact": {"can_push_to_local": False, "can_push_to_external": False}}
    )

    await sync_state.reset(organization, default_enabled=True)

    assert all(flags == (True, True) for flags in _flags(organization).values())


@pytest.mark.asyncio
async def test_reset_false_never_disables_a_flag(sync_state, make_organization):
    organization = make_organization(
        synchronized_entities={
            "contact": {"can_push_to_local": True, "can_push_to_external": True},
            "payment": {"can_push_to_local": False, "can_push_to_external": True},
        }
    )

    await sync_state.reset(organization, default_enabled=False)

    assert _flags(organization)["contact"] == (True, True)
    assert _flags(organization)["payment"] == (False, True)


@pytest.mark.asyncio
async def test_reset_is_idempotent(sync_state, organizations, make_organization):
    organization = make_organization(synchronized_entities={"contact": True, "legacy": False})

    await sync_state.reset(organization, default_enabled=False)
    first = _flags(organization)
    await sync_state.reset(organization, default_enabled=False)

    assert _flags(organization) == first
    stored = await organizations.get(TENANT, organization.id)
    assert _flags(stored) == first


@pytest.mark.asyncio
async def test_reset_upgrades_legacy_boolean_entries(sync_state, make_organization):
    organization = make_organization(synchronized_entities={"contact": True, "invoice": False})

    await sync_state.reset(organization, default_enabled=False)

    assert _flags(organization)["contact"] == (True, True)
    assert _flags(organization)["invoice"] == (False, False)
    assert isinstance(organization.synchronized_entities["contact"], EntityCapabilities)


@pytest.mark.asyncio
async def test_reset_persists_and_refreshes_caller(sync_state, organizations, make_organization):
    organization = make_organization()

    returned = await sync_state.reset(organization, default_enabled=True)

    stored = await organizations.get(TENANT, organization.id)
    assert _flags(stored) == _flags(organization) == _flags(returned)
    assert organizations.commits == 1


@pytest.mark.asyncio
async def test_reset_reads_the_stored_map_not_the_stale_copy(sync_state, organizations, make_organization):
    organization = make_organization(
        synchronized_entities={"contact": {"can_push_to_local": True, "can_push_to_external": True}}
    )
    stale = await organizations.get(TENANT, organization.id)
    stale.synchronized_entities = {}

    await sync_state.reset(stale, default_enabled=False)

    assert _flags(stale)["contact"] == (True, True)


@pytest.mark.asyncio
async def test_concurrent_resets_are_serialized(sync_state, organizations, make_organization):
    organization = make_organization(synchronized_entities={"contact": False})

    await asyncio.gather(
        sync_state.reset(organization.model_copy(deep=True), default_enabled=True),
        sync_state.reset(organization.model_copy(deep=True), default_enabled=False),
    )

    stored = await organizations.get(TENANT, organization.id)
    assert all(flags == (True, True) for flags in _flags(stored).values())
    assert organizations.commits == 2


@pytest.mark.asyncio
async def test_reset_store_failure_propagates(sync_state, organizations, make_organization):
    organization = make_organization(synchronized_entities={"obsolete": True})
    organizations.fail_writes = True

    with pytest.raises(PersistenceError):
        await sync_state.reset(organization, default_enabled=True)

    assert list(organization.synchronized_entities) == ["obsolete"]
    stored = await organizations.get(TENANT, organization.id)
    assert list(stored.synchronized_entities) == ["obsolete"]


@pytest.mark.asyncio
async def test_reset_missing_organization_raises(sync_state, make_organization, organizations):
    organization = make_organization()
    organizations._organizations.clear()

    with pytest.raises(OrganizationNotFoundError):
        await sync_state.reset(organization)


def test_reconcile_accepts_raw_stored_values(registry):
    reconciled = reconcile_synchronized_entities(
        {"contact": True, "payment": None, "gone": True},
        registry,
        default_enabled=False,
    )
    assert set(reconciled) == {"contact", "invoice", "payment", "journal"}
    assert reconciled["contact"] == EntityCapabilities.both(True)
    assert reconciled["payment"] == EntityCapabilities.both(False)


@pytest.mark.asyncio
async def test_reset_false_keeps_flags_stored_under_older_keys(sync_state, organizations, make_organization):
    organization = make_organization(
        synchronized_entities={
            "contact": {"can_push_to_connec": True, "can_push_to_external": True},
            "invoice": {"can_push_to_local": None, "can_push_to_external": True},
        }
    )

    await sync_state.reset(organization, default_enabled=False)

    stored = await organizations.get(TENANT, organization.id)
    assert _flags(stored)["contact"] == (True, True)
    assert _flags(stored)["invoice"] == (False, True)


# ── can_push_to_local / can_push_to_external ──────────────────────────────────


def test_can_push_requires_flag_and_capability(sync_state, make_organization):
    organization = make_organization(
        synchronized_entities={
            "contact": {"can_push_to_local": False, "can_push_to_external": True},
            "payment": {"can_push_to_local": True, "can_push_to_external": True},
        }
    )

    assert sync_state.can_push_to_local(organization, Contact()) is False
    assert sync_state.can_push_to_external(organization, Contact()) is True
    assert sync_state.can_push_to_local(organization, Payment()) is True
    # Payments are read-only on the external side whatever the flag says
    assert sync_state.can_push_to_external(organization, Payment()) is False


def test_can_push_absent_entity_is_false(sync_state, make_organization):
    organization = make_organization(synchronized_entities={"contact": True})

    assert sync_state.can_push_to_local(organization, None) is False
    assert sync_state.can_push_to_external(organization, None) is False


def test_can_push_unregistered_entity_is_false(sync_state, make_organization):
    organization = make_organization(synchronized_entities={"item": True})

    assert sync_state.can_push_to_local(organization, Item()) is False


def test_can_push_type_missing_from_map_is_false(sync_state, make_organization):
    organization = make_organization(synchronized_entities={"contact": True})

    assert sync_state.can_push_to_local(organization, Invoice()) is False
    assert sync_state.can_push_to_local(organization, Contact()) is True


# ── displayable ───────────────────────────────────────────────────────────────


def test_displayable_omits_unbound_and_unregistered_types(sync_state, make_organization):
    organization = make_organization(
        synchronized_entities={"contact": True, "journal": True, "obsolete": True}
    )

    rows = sync_state.displayable(organization)

    assert list(rows) == ["contact"]
    assert rows["contact"].local_name == "Contacts"
    assert rows["contact"].external_name == "Contacts"
    assert rows["contact"].can_push_to_local is True
    assert rows["contact"].can_push_to_external is True


def test_displayable_reports_stored_flags(sync_state, make_organization):
    organization = make_organization(
        synchronized_entities={"payment": {"can_push_to_local": True, "can_push_to_external": True}}
    )

    row = sync_state.displayable(organization)["payment"]

    assert row.local_name == "Payments"
    assert row.can_push_to_external is True
