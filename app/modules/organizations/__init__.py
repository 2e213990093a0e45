"""
Organizations module.

Read-only view of the organization tree (organization → gyms → clients /
collaborators) that the billing core needs for currency and usage limits.
"""

from .models import Organization, Gym, GymClient, Collaborator, CollaboratorStatus
from .schemas import OrganizationUsage
from . import crud

__all__ = [
    "Organization",
    "Gym",
    "GymClient",
    "Collaborator",
    "CollaboratorStatus",
    "OrganizationUsage",
    "crud",
]
