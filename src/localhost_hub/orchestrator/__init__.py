"""Process orchestration and workspace coordination.

Public API:
    Hub: Composition root and command surface
    RunManager: Spawns, supervises and terminates runs
    EnvironmentResolver: Effective environment per run
    PortWatcher: Listening-port discovery
    WorkspaceCoordinator: Parallel/sequential workspace runs
    Repository, MemoryRepository, YamlRepository: Definition storage
    Models: Project, ScriptDescriptor, EnvProfile, EnvVar, Workspace,
        WorkspaceItem, RunRecord, RunHandle, RunState, RunMode, RunnerKind
"""

from .environment import EnvironmentResolver
from .hub import Hub
from .models import (
    EnvProfile,
    EnvVar,
    Project,
    RunHandle,
    RunMode,
    RunnerKind,
    RunRecord,
    RunState,
    ScriptDescriptor,
    Workspace,
    WorkspaceItem,
    WorkspaceRunState,
)
from .package_manager import detect_package_manager, select_package_manager
from .port_watcher import ExternalProcess, PortStatus, PortWatcher, PsutilScanner
from .repository import MemoryRepository, Repository, YamlRepository
from .run_manager import RunManager
from .workspace_coordinator import WorkspaceCoordinator

__all__ = [
    "EnvProfile",
    "EnvVar",
    "EnvironmentResolver",
    "ExternalProcess",
    "Hub",
    "MemoryRepository",
    "PortStatus",
    "PortWatcher",
    "Project",
    "PsutilScanner",
    "Repository",
    "RunHandle",
    "RunManager",
    "RunMode",
    "RunRecord",
    "RunState",
    "RunnerKind",
    "ScriptDescriptor",
    "Workspace",
    "WorkspaceCoordinator",
    "WorkspaceItem",
    "WorkspaceRunState",
    "YamlRepository",
    "detect_package_manager",
    "select_package_manager",
]
