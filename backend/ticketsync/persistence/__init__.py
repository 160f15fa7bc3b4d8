"""
Persistence collaborator package.
Provides the backend contract and an in-memory implementation.
"""
from .base import PersistenceBackend, Subscription, EventCallback, StatusCallback
from .in_memory import InMemoryPersistence, InMemorySubscription


def create_persistence(backend_type: str = "in_memory", **kwargs) -> PersistenceBackend:
    """
    Factory function to create a persistence backend.

    Args:
        backend_type: Type of backend ('in_memory')
        **kwargs: Backend-specific configuration

    Returns:
        PersistenceBackend instance
    """
    if backend_type == "in_memory":
        return InMemoryPersistence(**kwargs)

    raise ValueError(f"Unknown persistence backend: {backend_type}")


__all__ = [
    'PersistenceBackend',
    'Subscription',
    'EventCallback',
    'StatusCallback',
    'InMemoryPersistence',
    'InMemorySubscription',
    'create_persistence',
]
