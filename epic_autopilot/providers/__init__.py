"""External collaborator interfaces and their concrete bindings."""

from epic_autopilot.providers.base import (
    ContinuousIntegration,
    DevelopmentAgent,
    LocalChecks,
    ReviewService,
    VersionControl,
    WorkCatalog,
)

__all__ = [
    "ContinuousIntegration",
    "DevelopmentAgent",
    "LocalChecks",
    "ReviewService",
    "VersionControl",
    "WorkCatalog",
]
