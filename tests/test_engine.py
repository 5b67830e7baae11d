import asyncio

import pytest

from conftest import FailingStore
from core.engine import MemoryEngine
from utils.errors import ValidationError
from utils.kv_store import InMemoryKeyValueStore

USER = "5541933332222"


def test_inbound_message_runs_the_whole_flow(engine):
    async def scenario():
        for i in range(3):
            await engine.handle_inbound_message(USER, f"Help me with my diet, day {i}")
        return await engine.handle_inbound_message(USER, "Time for my workout", metadata={"session_length": 12})

    result = asyncio.run(scenario())

    assert result["ignored"] is False
    assert result["message"]["topic"] == "exercise"
    assert result["message"]["topic_change"]["from_topic"] == "nutrition"
    assert result["references"] == {"has_references": False}

    profile = engine.evolver.profiles[USER]
    assert profile.total_interactions == 4
    assert profile.learned_context.context_switches == 1
    assert profile.learned_context.session_length == 12.0
    assert profile.recent_topics.to_list() == ["nutrition", "nutrition", "nutrition", "exercise"]


def test_inbound_message_resolves_references(engine):
    async def scenario():
        engine.resolver.record_action(USER, "create_reminder", {"time": "07:00"}, "Wake-up reminder")
        return await engine.handle_inbound_message(USER, "do it again")

    result = asyncio.run(scenario())
    references = result["references"]
    assert references["has_references"] is True
    assert references["references"][0]["action"] == "create_reminder"
    assert references["references"][0]["parameters"] == {"time": "07:00"}


def test_audio_messages_count_as_voice_commands(engine):
    result = asyncio.run(engine.handle_inbound_message(USER, "play my playlist", message_type="audio"))
    assert "optimize_for_voice" in {a["action"] for a in result["adaptations"]}
    assert engine.memory.profiles[USER].usage_stats["message_types"] == {"audio": 1}


def test_opted_out_users_are_ignored(engine, store):
    async def scenario():
        await engine.privacy.process_opt_out(USER)
        result = await engine.handle_inbound_message(USER, "are you there?")
        return result, await store.keys("user_context:*")

    result, context_keys = asyncio.run(scenario())
    assert result == {"ignored": True, "reason": "opted_out"}
    assert context_keys == []
    assert USER not in engine.memory.contexts


def test_context_view_includes_learned_preferences(engine):
    async def scenario():
        await engine.handle_inbound_message(USER, "Please, thank you for the diet tips")
        return await engine.memory.get_current_context(USER)

    view = asyncio.run(scenario())
    learned = view["evolutionary_preferences"]
    assert learned["communication_style"] == "formal"
    assert learned["topic_interests"] == ["nutrition"]


def test_init_falls_back_to_memory_when_store_is_down(clock):
    failing = FailingStore()
    engine = MemoryEngine(config={}, store=failing, clock=clock)

    asyncio.run(engine.init())

    assert engine.initialized is True
    assert failing.closed is True
    assert isinstance(engine.store, InMemoryKeyValueStore)
    assert engine.memory.store is engine.store
    assert engine.evolver.store is engine.store
    assert engine.privacy.store is engine.store


def test_init_keeps_a_healthy_store(engine, store):
    asyncio.run(engine.init())
    assert engine.store is store


def test_engine_survives_store_failures(clock):
    engine = MemoryEngine(config={}, store=FailingStore(), clock=clock)

    result = asyncio.run(engine.handle_inbound_message(USER, "Is anyone keeping notes?"))

    assert result["ignored"] is False
    assert len(engine.memory.contexts[USER].short_term) == 1
    assert engine.evolver.profiles[USER].total_interactions == 1


def test_config_values_reach_components(store, clock):
    engine = MemoryEngine(config={"max_short_term_messages": 7, "topic_change_threshold": 0.5,
                                  "memory_retention_days": 3}, store=store, clock=clock)
    assert engine.memory.max_short_term_messages == 7
    assert engine.memory.topic_change_threshold == 0.5
    assert engine.evolver.retention_days == 3


def test_cleanup_and_stats(engine, clock):
    async def scenario():
        await engine.handle_inbound_message(USER, "hello")
        clock.advance(days=45)
        return await engine.cleanup_old_data()

    result = asyncio.run(scenario())
    assert result["memory"]["users_processed"] == 1
    assert result["profiles"]["profiles_processed"] == 1
    assert len(engine.evolver.profiles[USER].interaction_history) == 0

    stats = engine.get_stats()
    assert stats["context"]["active_users"] == 1
    assert stats["evolution"]["total_profiles"] == 1
    assert stats["evolution"]["evolution_stages"]["beginner"] == 1
    assert stats["references"]["total_patterns"] > 0


def test_bad_feedback_is_rejected_before_recording(engine, store):
    with pytest.raises(ValidationError) as excinfo:
        asyncio.run(engine.handle_inbound_message(USER, "rate this", metadata={"feedback": "great"}))

    assert excinfo.value.field == "feedback"
    assert USER not in engine.memory.contexts
    assert USER not in engine.evolver.profiles
    assert asyncio.run(store.keys("user_context:*")) == []


def test_stats_include_privacy(engine):
    asyncio.run(engine.privacy.set_user_privacy(USER, "standard"))
    stats = engine.get_stats()
    assert stats["privacy"]["total_users"] == 1
    assert stats["privacy"]["privacy_levels"]["standard"] == 1
