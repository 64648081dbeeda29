"""Provider interfaces for conduitctl."""
from __future__ import annotations

from .docker import ContainerSpec, DockerEngine, LogFollower, ResourceSample
from .service import (
    AutostartStatus,
    InitKind,
    ServiceError,
    ServiceManager,
    ServiceResult,
    UnitSpec,
    detect_init_kind,
)

__all__ = [
    "AutostartStatus",
    "ContainerSpec",
    "DockerEngine",
    "InitKind",
    "LogFollower",
    "ResourceSample",
    "ServiceError",
    "ServiceManager",
    "ServiceResult",
    "UnitSpec",
    "detect_init_kind",
]
