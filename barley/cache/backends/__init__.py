"""
Barley cache backends - storage implementations.
"""

from .memory import MemoryBackend
from .redis import RedisBackend
from .failover import FailoverBackend

__all__ = [
    "MemoryBackend",
    "RedisBackend",
    "FailoverBackend",
]
