"""Server provisioning, supervision, model installs and generation."""

from .generation import GenerateOptions, GenerationClient
from .installer import InstallOutcome, ModelInstaller
from .provisioner import BinaryProvisioner, PlatformTarget, detect_platform
from .supervisor import (
    InvalidTransitionError,
    ServerEvent,
    ServerStatus,
    ServerSupervisor,
    next_status,
)

__all__ = [
    "BinaryProvisioner",
    "GenerateOptions",
    "GenerationClient",
    "InstallOutcome",
    "InvalidTransitionError",
    "ModelInstaller",
    "PlatformTarget",
    "ServerEvent",
    "ServerStatus",
    "ServerSupervisor",
    "detect_platform",
    "next_status",
]
