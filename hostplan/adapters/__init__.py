"""Adapters — collaborator bindings for host tools.

Public re-exports for convenient access.
"""

from hostplan.adapters.base import Collaborator
from hostplan.adapters.mock import MockHost
from hostplan.adapters.registry import CollaboratorRegistry, local_registry

__all__ = [
    "Collaborator",
    "CollaboratorRegistry",
    "MockHost",
    "local_registry",
]
