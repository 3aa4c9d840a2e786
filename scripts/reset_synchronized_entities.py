#!/usr/bin/env python3
"""CLI script to reconcile every organization's entity permission map.

Usage:
    python scripts/reset_synchronized_entities.py
    python scripts/reset_synchronized_entities.py --default-enabled
    python scripts/reset_synchronized_entities.py --tenant acme --organization-id <uuid>

Run after deploying a release that adds or removes entity types. Each
organization is reset under its own row lock: types no longer configured are
dropped, newly configured types are added with the default flag, and no
existing flag is ever turned off.

Connects directly to the database using DATABASE_URL from environment or .env file.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.connector
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def reset_all(default_enabled: bool, tenant: str | None, organization_id: str | None) -> int:
    """Reset the selected organizations. Returns the number of failures."""
    from src.connector.api.middleware.logging import configure_structlog
    from src.connector.config import get_settings
    from src.connector.core.database import close_db
    from src.connector.main import build_services
    from src.connector.organizations.repository import (
        OrganizationNotFoundError,
        PersistenceError,
    )

    configure_structlog()
    services = build_services(get_settings())

    if organization_id:
        targets = [(tenant, organization_id)]
    else:
        targets = [
            (org_tenant, org_id)
            for org_tenant, org_id in await services.organizations.list_ids()
            if tenant is None or org_tenant == tenant
        ]

    print(f"Resetting {len(targets)} organization(s), default_enabled={default_enabled}")
    failures = 0
    for org_tenant, org_id in targets:
        organization = await services.organizations.get(org_tenant, org_id)
        if organization is None:
            print(f"  {org_id}: not found")
            failures += 1
            continue
        try:
            await services.sync_state.reset(organization, default_enabled)
        except (OrganizationNotFoundError, PersistenceError) as exc:
            print(f"  {org_id}: FAILED ({exc})")
            failures += 1
            continue
        print(f"  {org_id}: {', '.join(sorted(organization.synchronized_entities))}")

    await close_db()
    return failures


def main() -> None:
    from src.connector.config import get_settings

    parser = argparse.ArgumentParser(description="Reconcile organizations' synchronized entities")
    parser.add_argument(
        "--default-enabled",
        action=argparse.BooleanOptionalAction,
        default=get_settings().RESET_DEFAULT_ENABLED,
        help="Flag for newly registered entity types (default: RESET_DEFAULT_ENABLED)",
    )
    parser.add_argument("--tenant", default=None, help="Only reset organizations of this tenant")
    parser.add_argument("--organization-id", default=None, help="Only reset this organization")
    args = parser.parse_args()

    if args.organization_id and not args.tenant:
        parser.error("--organization-id requires --tenant")

    failures = asyncio.run(reset_all(args.default_enabled, args.tenant, args.organization_id))
    sys.exit(1 if failures else 0)


if __name__ == "__main__":
    main()
