"""Background git synchronization for repoman."""

from .fingerprint import ContentFingerprint, compute_fingerprint
from .handle import HandleSnapshot, RepositoryHandle, RepositoryKey
from .jobs import JobKind, JobResult, JobState, RepositoryJob
from .monitor import CompletedSync, RepositoryMonitor, baseline_key
from .probe import WorkingTreeProbe
from .progress import Progress
from .registry import RepositoryRegistry, get_repository_registry
from .remote import check_connection, detect_remote_default_branch
from .workspace import CopyResult, WorkspaceSync, remove_stray_files

__all__ = [
    'ContentFingerprint',
    'compute_fingerprint',
    'HandleSnapshot',
    'RepositoryHandle',
    'RepositoryKey',
    'JobKind',
    'JobResult',
    'JobState',
    'RepositoryJob',
    'CompletedSync',
    'RepositoryMonitor',
    'baseline_key',
    'WorkingTreeProbe',
    'Progress',
    'RepositoryRegistry',
    'get_repository_registry',
    'check_connection',
    'detect_remote_default_branch',
    'CopyResult',
    'WorkspaceSync',
    'remove_stray_files'
]
