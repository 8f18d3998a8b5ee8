"""Config replication from the MASTER to its peer.

Components:
- TreeWatcher: polling change detector over the configured roots
- ReplicationSender / ReplicationReceiver: one TCP session per push
- ConfigReplicator: role-gated, debounced push loop
"""

from dnsha.replication.manifest import FileEntry, build_manifest, is_excluded
from dnsha.replication.protocol import ReplicationJob
from dnsha.replication.receiver import ReplicationReceiver
from dnsha.replication.replicator import ConfigReplicator, ReplicatorStats
from dnsha.replication.sender import PushResult, ReplicationSender
from dnsha.replication.watcher import TreeWatcher

__all__ = [
    "ConfigReplicator",
    "FileEntry",
    "PushResult",
    "ReplicationJob",
    "ReplicationReceiver",
    "ReplicationSender",
    "ReplicatorStats",
    "TreeWatcher",
    "build_manifest",
    "is_excluded",
]
