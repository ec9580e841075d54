"""Repository replication."""

from .repository import FileRepository, ReplicationRepository
from .task import ReplicationResult, RepositoryReplicationTask

__all__ = [
    "FileRepository",
    "ReplicationRepository",
    "ReplicationResult",
    "RepositoryReplicationTask",
]
