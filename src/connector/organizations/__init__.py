"""Organization module -- persistence models, schemas, and repositories.

Provides SQLAlchemy models (Organization, Synchronization), Pydantic schemas
(Organization, EntityCapabilities, SynchronizationRun), and the async
OrganizationRepository / SynchronizationRepository.
"""
