"""
Utilities package
Contains configuration, logging, errors and storage backends
"""

# Import only essentials to avoid circular dependencies
from .config_loader import config, load_config

__all__ = [
    'config',
    'load_config',
    'redis_logger',
    'errors',
    'kv_store'
]
