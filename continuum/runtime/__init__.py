"""Runtime -- hosting conversations across continuations and restarts."""

from continuum.runtime.host import ConversationHost, HistoryAdvisor, OperationCountAdvisor
from continuum.runtime.snapshots import FileSnapshotStore, InMemorySnapshotStore, SnapshotStore

__all__ = [
    "ConversationHost",
    "FileSnapshotStore",
    "HistoryAdvisor",
    "InMemorySnapshotStore",
    "OperationCountAdvisor",
    "SnapshotStore",
]
