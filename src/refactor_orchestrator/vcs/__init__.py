from refactor_orchestrator.vcs.base import (
    OperationResult,
    RepositoryError,
    VersionControl,
    WorkingTreeStatus,
)
from refactor_orchestrator.vcs.git import GitGateway
from refactor_orchestrator.vcs.simulated import SIMULATED_COMMIT_PREFIX, SimulatedGateway

__all__ = [
    "SIMULATED_COMMIT_PREFIX",
    "GitGateway",
    "OperationResult",
    "RepositoryError",
    "SimulatedGateway",
    "VersionControl",
    "WorkingTreeStatus",
]
