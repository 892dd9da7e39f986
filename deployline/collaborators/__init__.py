"""External collaborators the pipeline drives but does not implement.

Each collaborator is a ``typing.Protocol``; ``memory`` provides in-process
implementations for development, the demo pipeline and tests.
"""

from deployline.collaborators.memory import (
    EnvSecretStore,
    InMemoryImageRegistry,
    InMemoryProvisioner,
    InMemorySecretStore,
    InMemorySourceProvider,
    SimulatedOrchestrator,
)
from deployline.collaborators.protocols import (
    ContainerOrchestrator,
    ImageRegistry,
    ProvisioningResult,
    Provisioner,
    SecretNotFoundError,
    SecretStore,
    SourceProvider,
    SourceRevision,
)

__all__ = [
    "ContainerOrchestrator",
    "ImageRegistry",
    "Provisioner",
    "ProvisioningResult",
    "SecretNotFoundError",
    "SecretStore",
    "SourceProvider",
    "SourceRevision",
    "EnvSecretStore",
    "InMemoryImageRegistry",
    "InMemoryProvisioner",
    "InMemorySecretStore",
    "InMemorySourceProvider",
    "SimulatedOrchestrator",
]
