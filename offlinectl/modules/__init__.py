"""
Offline bundle and fleet orchestration modules.
"""
from .errors import OfflineError
from .pipeline import InstallPipeline, PreparePipeline
from .ssh import ConnectionPool

__all__ = [
    'OfflineError',
    'InstallPipeline',
    'PreparePipeline',
    'ConnectionPool',
]
