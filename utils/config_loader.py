#!/usr/bin/env python3
"""
Configuration loader with environment variable support
"""

import os
import json
from pathlib import Path
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

DAY_SECONDS = 60 * 60 * 24


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config():
    """Load configuration from environment variables or config.json"""

    # Try to load config.json
    config_path = Path(__file__).parent / "config.json"
    if config_path.exists():
        with open(config_path, 'r') as f:
            config = json.load(f)
    else:
        config = {}

    # Redis configuration
    redis_defaults = config.get('redis', {})
    config['redis'] = {
        'host': os.getenv('REDIS_HOST', redis_defaults.get('host', 'localhost')),
        'port': int(os.getenv('REDIS_PORT', redis_defaults.get('port', 6379))),
        'username': os.getenv('REDIS_USERNAME', redis_defaults.get('username', 'default')),
        'password': os.getenv('REDIS_PASSWORD', redis_defaults.get('password', '')),
        'db': int(os.getenv('REDIS_DB', redis_defaults.get('db', 0)))
    }
    config['store_backend'] = os.getenv('MEMORY_STORE_BACKEND', config.get('store_backend', 'memory')).lower()

    # Memory configuration
    config['max_short_term_messages'] = int(os.getenv('MEMORY_MAX_SHORT_TERM', config.get('max_short_term_messages', 100)))
    config['max_conversation_length'] = int(os.getenv('MEMORY_MAX_CONVERSATION_LENGTH', config.get('max_conversation_length', 100)))
    config['topic_change_threshold'] = float(os.getenv('MEMORY_TOPIC_CHANGE_THRESHOLD', config.get('topic_change_threshold', 0.7)))
    config['topic_window_size'] = int(os.getenv('MEMORY_TOPIC_WINDOW', config.get('topic_window_size', 10)))
    config['summary_keep_recent'] = int(os.getenv('MEMORY_SUMMARY_KEEP_RECENT', config.get('summary_keep_recent', 10)))
    config['memory_retention_days'] = int(os.getenv('MEMORY_RETENTION_DAYS', config.get('memory_retention_days', 30)))

    # Persistence TTLs
    config['context_ttl_seconds'] = int(os.getenv('CONTEXT_TTL_SECONDS', config.get('context_ttl_seconds', 7 * DAY_SECONDS)))
    config['profile_ttl_seconds'] = int(os.getenv('PROFILE_TTL_SECONDS', config.get('profile_ttl_seconds', 30 * DAY_SECONDS)))

    # System configuration
    config['cleanup_interval_seconds'] = int(os.getenv('CLEANUP_INTERVAL_SECONDS', config.get('cleanup_interval_seconds', 3600)))
    config['log_level'] = os.getenv('LOG_LEVEL', config.get('log_level', 'INFO'))
    config['redis_logging'] = _env_bool('REDIS_LOGGING', bool(config.get('redis_logging', False)))
    config['api_host'] = os.getenv('API_HOST', config.get('api_host', '0.0.0.0'))
    config['api_port'] = int(os.getenv('API_PORT', config.get('api_port', 8000)))

    return config

# Export config
config = load_config()
