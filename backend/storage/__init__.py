# storage/__init__.py
# ============================================================================
# STORAGE MODULE
# ============================================================================
# Repository interfaces with in-memory and Postgres implementations
# ============================================================================

from storage.repositories import (
    IDocumentRepository,
    IMembershipRepository,
    IOrderRepository,
    InMemoryDocumentRepository,
    InMemoryMembershipRepository,
    InMemoryOrderRepository,
    InMemoryTables,
)

__all__ = [
    "IDocumentRepository",
    "IMembershipRepository",
    "IOrderRepository",
    "InMemoryDocumentRepository",
    "InMemoryMembershipRepository",
    "InMemoryOrderRepository",
    "InMemoryTables",
]
