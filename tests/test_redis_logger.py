import json
import logging

import pytest

from utils.config_loader import load_config
from utils.errors import redact_key
from utils.redis_logger import LOG_KEY, RedisLogHandler, RedisLogger, redact_user_id


class FakeRedis:
    """Just enough of the redis list API for the log handler"""

    def __init__(self):
        self.lists = {}
        self.ttls = {}

    def lpush(self, key, value):
        self.lists.setdefault(key, []).insert(0, value)

    def ltrim(self, key, start, end):
        self.lists[key] = self.lists.get(key, [])[start:end + 1]

    def expire(self, key, seconds):
        self.ttls[key] = seconds

    def lrange(self, key, start, end):
        return self.lists.get(key, [])[start:end + 1]


@pytest.mark.parametrize("user_id, expected", [
    ("5511999990000", "*********0000"),
    ("abcd", "****"),
    ("ab", "**"),
    ("", "<none>"),
    (None, "<none>"),
])
def test_redact_user_id(user_id, expected):
    assert redact_user_id(user_id) == expected


def test_redact_key_masks_only_the_id():
    assert redact_key("user_context:5511999990000") == "user_context:*********0000"
    assert redact_key("user_context:*") == "user_context:*"
    assert redact_key("-") == "-"


def test_handler_stores_and_trims_logs():
    client = FakeRedis()
    handler = RedisLogHandler(client, max_logs=3, ttl_seconds=60)
    logger = logging.getLogger("tests.redis_handler")
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False

    for i in range(5):
        logger.info(f"entry {i}")
    logger.error("something broke")

    stored = [json.loads(raw) for raw in client.lists[LOG_KEY]]
    assert len(stored) == 3
    assert stored[0]["level"] == "ERROR"
    assert stored[0]["message"] == "something broke"
    assert len(client.lists[f"{LOG_KEY}:error"]) == 1
    assert client.ttls[LOG_KEY] == 60


def test_handler_never_raises(capsys):
    class DownRedis(FakeRedis):
        def lpush(self, key, value):
            raise ConnectionError("redis down")

    handler = RedisLogHandler(DownRedis())
    handler.emit(logging.LogRecord("x", logging.INFO, __file__, 1, "hello", None, None))
    assert "Redis logging failed" in capsys.readouterr().err


def test_tail_and_search():
    client = FakeRedis()
    redis_logger = RedisLogger(client)
    logger = redis_logger.setup_logging("tests.redis_logger", logging.INFO)
    logger.propagate = False

    logger.info("cleanup processed 3 users")
    logger.warning("store unavailable")

    assert [entry["level"] for entry in redis_logger.tail(10)] == ["WARNING", "INFO"]
    assert len(redis_logger.search("CLEANUP")) == 1
    assert redis_logger.tail(10, level="warning")[0]["level"] == "WARNING"
    assert RedisLogger().tail() == []


def test_load_config_reads_environment(monkeypatch):
    monkeypatch.setenv("MEMORY_MAX_SHORT_TERM", "42")
    monkeypatch.setenv("MEMORY_TOPIC_CHANGE_THRESHOLD", "0.55")
    monkeypatch.setenv("MEMORY_STORE_BACKEND", "Redis")
    monkeypatch.setenv("REDIS_LOGGING", "yes")

    config = load_config()

    assert config["max_short_term_messages"] == 42
    assert config["topic_change_threshold"] == 0.55
    assert config["store_backend"] == "redis"
    assert config["redis_logging"] is True
    assert config["context_ttl_seconds"] == 7 * 24 * 60 * 60
