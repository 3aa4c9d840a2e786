"""Entity types shipped with the connector and their static provider table.

ENTITY_PROVIDERS is the startup-time lookup table consulted by
build_entity_registry(): configured identifiers are bound to the class listed
here, identifiers missing from the table are registered without a provider.
"""

from __future__ import annotations

from src.connector.entities.base import Entity


class Contact(Entity):
    """People and companies shared by both systems."""

    local_entity_name = "Contacts"
    external_entity_name = "Contacts"


class Invoice(Entity):
    """Customer invoices."""

    local_entity_name = "Invoices"
    external_entity_name = "Invoices"


class Item(Entity):
    """Products and services sold or purchased."""

    local_entity_name = "Items"
    external_entity_name = "Products"


class Payment(Entity):
    """Payments received against invoices.

    The external API exposes payments read-only, so they only flow into the
    local system.
    """

    local_entity_name = "Payments"
    external_entity_name = "Payments"
    writes_external = False


ENTITY_PROVIDERS: dict[str, type[Entity]] = {
    "contact": Contact,
    "invoice": Invoice,
    "item": Item,
    "payment": Payment,
}
