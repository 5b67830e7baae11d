#!/usr/bin/env python3
"""
Redis-based logging system
Stores engine logs in Redis with automatic rotation and tailing,
alongside the console, and masks user identifiers before they reach a log line
"""

import redis
import json
import logging
import sys
from datetime import datetime
from typing import Optional, List, Dict, Any
import traceback

from utils.config_loader import config

LOG_KEY = "memory_engine:logs"
REDACT_KEEP = 4
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def redact_user_id(user_id: Optional[str]) -> str:
    """Mask a user id, keeping only a fixed-length suffix"""
    if not user_id:
        return "<none>"
    user_id = str(user_id)
    if len(user_id) <= REDACT_KEEP:
        return "*" * len(user_id)
    return "*" * (len(user_id) - REDACT_KEEP) + user_id[-REDACT_KEEP:]


class RedisLogHandler(logging.Handler):
    """Logging handler that stores logs in Redis"""

    def __init__(self,
                 redis_client: redis.Redis,
                 log_key: str = LOG_KEY,
                 max_logs: int = 1000,
                 ttl_seconds: int = 86400):  # 24 hours default
        super().__init__()
        self.redis_client = redis_client
        self.log_key = log_key
        self.max_logs = max_logs
        self.ttl_seconds = ttl_seconds

    def emit(self, record):
        """Store log record in Redis"""
        try:
            log_entry = {
                "timestamp": datetime.now().isoformat(),
                "level": record.levelname,
                "module": record.module,
                "function": record.funcName,
                "line": record.lineno,
                "message": self.format(record)
            }

            if record.exc_info:
                log_entry["exception"] = traceback.format_exception(*record.exc_info)

            payload = json.dumps(log_entry)

            # Newest at front, trimmed to max size
            self.redis_client.lpush(self.log_key, payload)
            self.redis_client.ltrim(self.log_key, 0, self.max_logs - 1)
            self.redis_client.expire(self.log_key, self.ttl_seconds)

            # Level-specific keys for filtering
            level_key = f"{self.log_key}:{record.levelname.lower()}"
            self.redis_client.lpush(level_key, payload)
            self.redis_client.ltrim(level_key, 0, 100)
            self.redis_client.expire(level_key, self.ttl_seconds)

        except Exception as e:
            # A handler must never raise into the caller
            print(f"Redis logging failed: {e}", file=sys.stderr)


class RedisLogger:
    """Redis-backed log storage with tailing and search"""

    def __init__(self, redis_client: Optional[redis.Redis] = None, log_key: str = LOG_KEY):
        self.redis_client = redis_client
        self.log_key = log_key

    def setup_logging(self, logger_name: Optional[str] = None, level: int = logging.INFO) -> logging.Logger:
        """Setup a logger with console and (when available) Redis handlers"""
        logger = logging.getLogger(logger_name)
        logger.setLevel(level)

        # Remove existing handlers to avoid duplicates
        logger.handlers.clear()

        formatter = logging.Formatter(LOG_FORMAT)

        if self.redis_client is not None:
            redis_handler = RedisLogHandler(self.redis_client, self.log_key)
            redis_handler.setLevel(level)
            redis_handler.setFormatter(formatter)
            logger.addHandler(redis_handler)

        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

        return logger

    def tail(self, n: int = 50, level: Optional[str] = None) -> List[Dict[str, Any]]:
        """Most recent log entries, newest first"""
        if self.redis_client is None:
            return []
        key = f"{self.log_key}:{level.lower()}" if level else self.log_key
        logs = []
        for raw in self.redis_client.lrange(key, 0, n - 1):
            try:
                logs.append(json.loads(raw))
            except (TypeError, ValueError):
                continue
        return logs

    def search(self, pattern: str, level: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """Search stored logs for a substring"""
        pattern = pattern.lower()
        return [
            log for log in self.tail(limit, level)
            if pattern in log.get("message", "").lower()
        ]


def _connect_log_redis() -> Optional[redis.Redis]:
    if not config.get('redis_logging'):
        return None
    try:
        client = redis.Redis(
            host=config['redis']['host'],
            port=config['redis']['port'],
            username=config['redis'].get('username', 'default'),
            password=config['redis']['password'] or None,
            db=config['redis']['db'],
            decode_responses=True,
            socket_connect_timeout=2
        )
        client.ping()
        return client
    except redis.RedisError as e:
        print(f"Redis not available for logging: {e}", file=sys.stderr)
        return None


def get_redis_logger(logger_name: Optional[str] = None,
                     redis_client: Optional[redis.Redis] = None) -> logging.Logger:
    """Get a logger configured for Redis (console only when Redis is unavailable)"""
    level = getattr(logging, str(config.get('log_level', 'INFO')).upper(), logging.INFO)
    client = redis_client if redis_client is not None else _connect_log_redis()
    return RedisLogger(client).setup_logging(logger_name, level)
