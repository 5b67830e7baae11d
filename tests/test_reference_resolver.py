import asyncio

import pytest

from core.reference_resolver import ReferenceResolver
from utils.errors import ValidationError

USER = "5521977776666"


def test_detects_bilingual_patterns(resolver):
    assert resolver.has_references("Faça de novo, por favor")
    assert resolver.has_references("like I said, no sugar")
    assert not resolver.has_references("What is the weather today?")


def test_detection_order_is_confidence_then_position(resolver):
    detected = resolver.detect_references("as usual, like I said, go to the restaurant")
    assert [(d.type, d.confidence) for d in detected] == [
        ("previous_statement", 0.9),
        ("restaurant", 0.9),
        ("usual_time", 0.7),
    ]


def test_repeat_action_resolves_last_recorded_action(resolver):
    resolver.record_action(USER, "create_reminder", {"time": "08:00"}, "Reminder at 08:00")
    resolver.record_action(USER, "log_meal", ["rice", "beans"], "Logged lunch")

    result = asyncio.run(resolver.process_smart_references(USER, "do it again"))

    assert result["has_references"] is True
    reference = result["references"][0]
    assert reference["type"] == "repeat_action"
    assert reference["found"] is True
    assert reference["action"] == "log_meal"
    assert reference["parameters"] == ["rice", "beans"]
    assert "*Action:* log_meal" in result["response"]
    assert "*Parameters:* rice, beans" in result["response"]


def test_repeat_action_without_history_is_not_found(resolver):
    result = asyncio.run(resolver.process_smart_references(USER, "faça de novo"))
    reference = result["references"][0]
    assert reference["found"] is False
    assert reference["message"] == "I could not find a previous action to repeat."


def test_previous_statement_skips_inbound_message(memory, resolver):
    async def scenario():
        await memory.record_message(USER, "I want to cut sugar from breakfast")
        await memory.record_message(USER, "ok")
        await memory.record_message(USER, "like I said, no sugar")
        return await resolver.process_smart_references(USER, "like I said, no sugar")

    result = asyncio.run(scenario())
    reference = result["references"][0]
    assert reference["type"] == "previous_statement"
    assert reference["found"] is True
    assert reference["resolved_content"] == "I want to cut sugar from breakfast"


def test_entity_reference_uses_synonyms(memory, resolver, clock):
    async def scenario():
        await memory.record_message(USER, "Dinner at the pizzaria Bella was amazing")
        clock.advance(minutes=5)
        await memory.record_message(USER, "Also bought shoes")
        return await resolver.process_smart_references(USER, "book that restaurant again")

    result = asyncio.run(scenario())
    reference = result["references"][0]
    assert reference["type"] == "entity_reference"
    assert reference["entity_type"] == "restaurant"
    assert reference["resolved_content"] == "Dinner at the pizzaria Bella was amazing"
    assert result["suggestions"] == ["Want more information about it?", "Can I help with something related?"]


def test_quantity_and_time_references(memory, resolver):
    async def scenario():
        await memory.record_message(USER, "I ate 200g of chicken at 12:30")
        return await resolver.process_smart_references(USER, "the same amount at the same time")

    result = asyncio.run(scenario())
    by_type = {ref["type"]: ref for ref in result["references"]}
    assert by_type["quantity_reference"]["found"] is True
    assert by_type["time_reference"]["found"] is True
    assert len(result["suggestions"]) <= 3


def test_entity_reference_searches_long_term(memory, resolver):
    async def scenario():
        await memory.save_important_info(USER, "Favorite store is Mercado Central", "places")
        return await resolver.process_smart_references(USER, "go to the store")

    reference = asyncio.run(scenario())["references"][0]
    assert reference["found"] is True
    assert reference["resolved_content"] == "Favorite store is Mercado Central"


def test_no_reference_means_no_work(resolver):
    assert asyncio.run(resolver.process_smart_references(USER, "hello there")) == {"has_references": False}


def test_reply_sender_receives_response(memory):
    sent = []

    async def sender(user_id, text):
        sent.append((user_id, text))

    resolver = ReferenceResolver(memory, reply_sender=sender)
    resolver.record_action(USER, "weekly_report")
    result = asyncio.run(resolver.process_smart_references(USER, "repeat that"))

    assert sent == [(USER, result["response"])]


def test_reply_sender_failure_is_logged(memory, caplog):
    async def broken_sender(user_id, text):
        raise ConnectionError("gateway down")

    resolver = ReferenceResolver(memory, reply_sender=broken_sender)
    result = asyncio.run(resolver.process_smart_references(USER, "do it again"))

    assert result["has_references"] is True
    assert "Reply dispatch failed" in caplog.text
    assert USER not in caplog.text


def test_action_history_is_bounded(resolver):
    for i in range(12):
        resolver.record_action(USER, f"action_{i}")
    history = resolver.get_action_history(USER)
    assert len(history) == 10
    assert history[0]["action"] == "action_2"
    assert resolver.clear_action_history(USER) is True
    assert resolver.clear_action_history(USER) is False


def test_record_action_requires_a_name(resolver):
    with pytest.raises(ValidationError):
        resolver.record_action(USER, "  ")


def test_custom_patterns_and_mappings(memory, resolver):
    resolver.add_reference_pattern("spatial", r"a academia|the gym", "gym", 0.85)
    resolver.add_contextual_mapping("gym", ["academia", "gym", "crossfit"])

    async def scenario():
        await memory.record_message(USER, "Started crossfit on monday")
        return await resolver.process_smart_references(USER, "going back to the gym")

    reference = asyncio.run(scenario())["references"][0]
    assert reference["reference_type"] == "gym"
    assert reference["type"] == "generic_reference"

    spatial = next(p for p in resolver.get_all_reference_patterns() if p["category"] == "spatial")
    assert {"pattern": "a academia|the gym", "type": "gym", "confidence": 0.85} in spatial["patterns"]
    assert {"entity_type": "gym", "synonyms": ["academia", "gym", "crossfit"]} in \
        resolver.get_all_contextual_mappings()


def test_invalid_confidence_is_rejected(resolver):
    with pytest.raises(ValidationError):
        resolver.add_reference_pattern("action", "again", "repeat_action", 1.5)


def test_reference_stats(resolver):
    resolver.record_action(USER, "a")
    resolver.record_action("other", "b")
    stats = resolver.get_reference_stats()
    assert stats["active_users"] == 2
    assert stats["total_actions"] == 2
    assert stats["total_patterns"] > 20
