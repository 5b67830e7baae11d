import asyncio
import json

import pytest

from core.privacy_gate import PrivacyGate
from utils.errors import ValidationError

USER = "5531955554444"


async def _chat(engine, *texts):
    for text in texts:
        await engine.handle_inbound_message(USER, text)


def test_opt_out_removes_every_user_key(engine, store):
    async def scenario():
        await _chat(engine, "I need a diet plan", "Schedule my workout", "thanks!")
        await engine.memory.save_important_info(USER, "Allergic to shrimp", "health")
        engine.resolver.record_action(USER, "create_meal_plan")
        await engine.privacy.set_user_privacy(USER, "low")

        result = await engine.privacy.process_opt_out(USER, "gdpr_request")
        leftovers = {
            prefix: await store.keys(f"{prefix}:*")
            for prefix in ("user_context", "user_profile", "evolutionary_profile", "privacy_settings")
        }
        return result, leftovers, await store.keys("opt_out:*")

    result, leftovers, opt_out_keys = asyncio.run(scenario())

    assert result["opted_out"] is True
    assert result["reason"] == "gdpr_request"
    assert set(result["deleted_data"]) >= {"user_context", "user_profile", "evolutionary_profile",
                                           "action_history", "privacy_settings"}
    assert all(keys == [] for keys in leftovers.values())
    assert opt_out_keys == [f"opt_out:{USER}"]
    assert USER not in engine.memory.contexts
    assert USER not in engine.evolver.profiles
    assert engine.resolver.get_action_history(USER) == []


def test_opt_out_is_remembered_across_restarts(engine, store, memory, evolver, resolver, clock):
    asyncio.run(engine.privacy.process_opt_out(USER))

    fresh_gate = PrivacyGate(store, memory, evolver, resolver, clock=clock)
    assert asyncio.run(fresh_gate.is_user_opted_out(USER)) is True
    assert asyncio.run(fresh_gate.is_user_opted_out("someone_else")) is False


def test_high_privacy_disables_learning_and_clears_context(engine):
    async def scenario():
        await _chat(engine, "I love my gym routine", "Please track my diet")
        settings = await engine.privacy.set_user_privacy(USER, "high")
        after = await engine.handle_inbound_message(USER, "Please remember my workout")
        return settings, after

    settings, after = asyncio.run(scenario())

    assert settings["level"] == "high"
    assert settings["data_retention"] == 7
    profile = engine.evolver.profiles[USER]
    assert profile.learning_enabled is False
    assert profile.learned_preferences.topic_interests == []
    assert after["adaptations"] == []
    assert engine.memory.profiles[USER].preferences["privacy"] == "high"
    assert engine.memory.profiles[USER].preferences["learning_enabled"] is False
    assert [m.content for m in engine.memory.contexts[USER].short_term] == ["Please remember my workout"]


def test_lowering_privacy_re_enables_learning(engine):
    async def scenario():
        await _chat(engine, "hello")
        await engine.privacy.set_user_privacy(USER, "high")
        await engine.privacy.set_user_privacy(USER, "standard")
        return await engine.handle_inbound_message(USER, "Please help with my diet")

    result = asyncio.run(scenario())
    assert engine.evolver.profiles[USER].learning_enabled is True
    assert result["adaptations"]


def test_unknown_level_is_rejected(engine):
    with pytest.raises(ValidationError) as excinfo:
        asyncio.run(engine.privacy.set_user_privacy(USER, "paranoid"))
    assert excinfo.value.field == "level"


def test_default_settings_are_standard(engine):
    settings = asyncio.run(engine.privacy.get_user_privacy_settings(USER))
    assert settings["level"] == "standard"
    assert settings["data_retention"] == 30


def test_custom_settings_override_level(engine):
    async def scenario():
        await engine.privacy.set_user_privacy(USER, "standard", {"profile_sharing": True})
        return await engine.privacy.get_user_privacy_settings(USER)

    settings = asyncio.run(scenario())
    assert settings["profile_sharing"] is True
    assert settings["level"] == "standard"


def test_export_contains_every_section(engine):
    async def scenario():
        await _chat(engine, "I want a diet with more protein")
        await engine.memory.save_important_info(USER, "Vegetarian", "food")
        engine.resolver.record_action(USER, "log_meal", {"meal": "lunch"})
        return await engine.privacy.export_user_data(USER)

    export = asyncio.run(scenario())
    data = export["data"]

    assert export["user_id"] == USER
    assert data["context"]["message_count"] == 1
    assert data["user_profile"]["interests"] == ["nutrition"]
    assert data["evolutionary_profile"]["total_interactions"] == 1
    assert data["privacy_settings"]["level"] == "standard"
    assert [note["content"] for note in data["important_info"]] == ["Vegetarian"]
    assert data["action_history"][0]["action"] == "log_meal"


def test_delete_all_user_data_keeps_user_able_to_return(engine):
    async def scenario():
        await _chat(engine, "hello there")
        deleted = await engine.privacy.delete_all_user_data(USER)
        again = await engine.handle_inbound_message(USER, "I am back")
        return deleted, again

    deleted, again = asyncio.run(scenario())
    assert "user_context" in deleted["deleted_data"]
    assert again["ignored"] is False


def test_consent_history_records_privacy_changes(engine):
    async def scenario():
        await engine.privacy.set_user_privacy(USER, "low")
        await engine.privacy.set_user_privacy(USER, "standard", {"profile_sharing": True})
        return await engine.privacy.get_consent_history(USER)

    history = asyncio.run(scenario())
    assert [consent["type"] for consent in history] == ["privacy_settings", "privacy_settings"]
    assert history[0]["data"] == {"level": "low", "custom_settings": {}}
    assert history[1]["data"]["custom_settings"] == {"profile_sharing": True}
    assert history[1]["ip_address"] == "unknown"


def test_consent_history_is_capped(engine):
    async def scenario():
        for i in range(55):
            await engine.privacy.record_consent(USER, "privacy_settings", {"n": i})
        return await engine.privacy.get_consent_history(USER)

    history = asyncio.run(scenario())
    assert len(history) == 50
    assert history[0]["data"] == {"n": 5}
    assert history[-1]["data"] == {"n": 54}


def test_opt_out_keeps_only_the_opt_out_consent(engine, store):
    async def scenario():
        await engine.privacy.set_user_privacy(USER, "high")
        await engine.privacy.process_opt_out(USER, "gdpr_request")
        return await store.get(f"consent_history:{USER}")

    stored = json.loads(asyncio.run(scenario()))
    assert [consent["type"] for consent in stored] == ["opt_out"]
    assert stored[0]["data"] == {"reason": "gdpr_request"}


def test_delete_removes_consent_history(engine, store):
    async def scenario():
        await engine.privacy.set_user_privacy(USER, "low")
        deleted = await engine.privacy.delete_all_user_data(USER)
        return deleted, await store.keys("consent_history:*"), await engine.privacy.get_consent_history(USER)

    deleted, keys, history = asyncio.run(scenario())
    assert "consent_history" in deleted["deleted_data"]
    assert keys == []
    assert history == []


def test_consent_history_survives_restart_and_export(engine, store, memory, evolver, resolver, clock):
    asyncio.run(engine.privacy.set_user_privacy(USER, "low"))

    fresh_gate = PrivacyGate(store, memory, evolver, resolver, clock=clock)
    export = asyncio.run(fresh_gate.export_user_data(USER))
    assert [consent["data"]["level"] for consent in export["data"]["consent_history"]] == ["low"]


def test_consent_cleanup_drops_old_entries(engine, clock):
    async def scenario():
        await engine.privacy.record_consent(USER, "privacy_settings", {"level": "low"})
        clock.advance(days=31)
        await engine.privacy.record_consent(USER, "privacy_settings", {"level": "high"})
        result = await engine.privacy.cleanup_old_data()
        return result, await engine.privacy.get_consent_history(USER)

    result, history = asyncio.run(scenario())
    assert result["users_processed"] == 1
    assert [consent["data"]["level"] for consent in history] == ["high"]


def test_privacy_stats(engine):
    async def scenario():
        await engine.privacy.set_user_privacy(USER, "high")
        await engine.privacy.set_user_privacy("5531900001111", "low")
        await engine.privacy.process_opt_out("5531900002222")

    asyncio.run(scenario())
    stats = engine.privacy.get_privacy_stats()
    assert stats["total_users"] == 2
    assert stats["opt_out_users"] == 1
    assert stats["consent_histories"] == 3
    assert stats["privacy_levels"] == {"low": 1, "standard": 0, "high": 1, "opt_out": 1}
