"""Thread context and storage components"""

from .storage import (
    ThreadStorage,
    MemoryThreadStorage,
    SQLThreadStorage,
    MongoDBThreadStorage,
    FileThreadStorage,
    StorageRegistry,
)
from .thread import Thread

__all__ = [
    'ThreadStorage',
    'MemoryThreadStorage',
    'SQLThreadStorage',
    'MongoDBThreadStorage',
    'FileThreadStorage',
    'StorageRegistry',
    'Thread',
]
