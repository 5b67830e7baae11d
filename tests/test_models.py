from datetime import datetime

import pytest

from core.models import (
    BoundedLog,
    EvolutionaryProfile,
    Message,
    UserContext,
    clamp,
    new_message_id,
)


def _message(content="hello there", when=None):
    return Message(id=new_message_id(), timestamp=when or datetime(2024, 1, 1, 9), type="text", content=content)


def test_bounded_log_evicts_oldest_and_returns_it():
    log = BoundedLog(3)
    assert log.append(1) is None
    assert log.append(2) is None
    assert log.append(3) is None
    assert log.append(4) == 1
    assert log.to_list() == [2, 3, 4]
    assert len(log) == 3


def test_bounded_log_extend_reports_every_eviction():
    log = BoundedLog(2, [1, 2])
    assert log.extend([3, 4, 5]) == [1, 2, 3]
    assert log.to_list() == [4, 5]


def test_bounded_log_retain_and_tail():
    log = BoundedLog(10, range(6))
    assert log.retain(lambda n: n % 2 == 0) == 3
    assert log.to_list() == [0, 2, 4]
    assert log.tail(2) == [2, 4]
    assert log.tail(0) == []
    assert log[-1] == 4


def test_bounded_log_rejects_zero_capacity():
    with pytest.raises(ValueError):
        BoundedLog(0)


def test_clamp_bounds():
    assert clamp(1.7) == 1.0
    assert clamp(-0.2) == 0.0
    assert clamp(0.35) == 0.35


def test_message_is_immutable_except_processed():
    message = _message()
    message.processed = True
    assert message.processed is True
    with pytest.raises(AttributeError):
        message.content = "changed"


def test_archived_copy_keeps_original_untouched():
    message = _message()
    archived = message.archived()
    assert archived.is_archived
    assert archived.id == message.id
    assert message.category is None


def test_user_context_from_dict_archives_overflow():
    now = datetime(2024, 1, 1, 9)
    context = UserContext.create("5511999990000", now, max_short_term=10)
    for i in range(6):
        context.short_term.append(_message(f"message number {i}"))

    restored = UserContext.from_dict(context.to_dict(), max_short_term=4)

    assert [m.content for m in restored.short_term] == [f"message number {i}" for i in range(2, 6)]
    assert [m.content for m in restored.long_term] == ["message number 0", "message number 1"]
    assert all(m.is_archived for m in restored.long_term)


def test_evolutionary_profile_serializes_hour_keys_as_strings():
    now = datetime(2024, 1, 1, 9)
    profile = EvolutionaryProfile.create("user-1", now)
    profile.learned_preferences.time_preferences[9] = 3
    profile.recent_topics.append("nutrition")

    data = profile.to_dict()
    assert data["learned_preferences"]["time_preferences"] == {"9": 3}

    restored = EvolutionaryProfile.from_dict(data)
    assert restored.learned_preferences.time_preferences == {9: 3}
    assert restored.recent_topics.to_list() == ["nutrition"]
    assert restored.evolution_metrics.learning_rate == 0.1


def test_reset_learning_keeps_counters():
    profile = EvolutionaryProfile.create("user-1", datetime(2024, 1, 1, 9))
    profile.total_interactions = 12
    profile.learned_preferences.topic_interests.append("exercise")
    profile.reset_learning()
    assert profile.total_interactions == 12
    assert profile.learned_preferences.topic_interests == []
