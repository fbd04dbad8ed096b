from taskpilot.state.checkpoints import (
    CheckpointManager,
    CheckpointRef,
    CheckpointStorage,
    DirectorySnapshotStorage,
    ShadowGitStorage,
    build_checkpoint_manager,
)
from taskpilot.state.store import TaskStore

__all__ = [
    "CheckpointManager",
    "CheckpointRef",
    "CheckpointStorage",
    "DirectorySnapshotStorage",
    "ShadowGitStorage",
    "TaskStore",
    "build_checkpoint_manager",
]
