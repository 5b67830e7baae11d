from datetime import datetime

import pytest

from core.classifiers import (
    FormalityClassifier,
    InterestClassifier,
    SentimentClassifier,
    TopicClassifier,
    topic_similarity,
)
from core.models import Message
from core.summarizer import ConversationSummarizer


@pytest.mark.parametrize("text, expected", [
    ("Quero montar uma dieta nova", "nutrition"),
    ("How many calories in this meal?", "nutrition"),
    ("Vou para a academia depois do trabalho", "exercise"),
    ("Set a reminder for tomorrow", "productivity"),
    ("Qual o preço do plano?", "financial"),
    ("Bom dia!", "general"),
])
def test_topic_labels(text, expected):
    assert TopicClassifier().label(text) == expected


def test_keywords_match_at_word_start_only():
    # "gym" inside another word is not a hit
    assert TopicClassifier().label("the algym token") == "general"


def test_interest_classifier_reports_every_hit():
    labels = InterestClassifier().all_labels("My doctor said to combine diet and workout")
    assert labels == ["nutrition", "exercise", "health"]


def test_formality_uses_whole_words():
    classifier = FormalityClassifier()
    assert classifier.counts("Olá, por favor me ajude") == (1, 1)
    # "oi" inside "oito" must not count as casual
    assert classifier.counts("São oito horas") == (0, 0)
    assert classifier.classify("Please, thank you").label == "formal"
    assert classifier.classify("hey, cool").label == "casual"


def test_sentiment_checks_positive_first():
    classifier = SentimentClassifier()
    assert classifier.classify("great, but there is a problem").label == "positive"
    assert classifier.classify("that was terrible").label == "negative"
    assert classifier.classify("ok").label == "neutral"


def test_topic_similarity():
    assert topic_similarity(["nutrition", "nutrition"], ["nutrition"]) == 1.0
    assert topic_similarity(["nutrition"], ["exercise"]) == 0.0
    assert topic_similarity(["nutrition", "exercise"], ["nutrition"]) == pytest.approx(1 / 3)
    assert topic_similarity([], ["nutrition"]) == 0.0
    # order does not matter
    assert topic_similarity(["a", "b", "b"], ["b"]) == topic_similarity(["b", "a", "b"], ["b"])


def _messages(*contents):
    return [
        Message(id=f"msg_{i}", timestamp=datetime(2024, 1, 1, 9, i), type="text", content=content)
        for i, content in enumerate(contents)
    ]


def test_summarizer_needs_minimum_messages():
    summarizer = ConversationSummarizer()
    assert summarizer.build("conv_1", _messages("a", "b", "c", "d")) is None


def test_summarizer_builds_summary():
    summarizer = ConversationSummarizer()
    messages = _messages(
        "I want a new diet. This is important.",
        "Can you schedule my workout?",
        "That is great, thanks",
        "Prefiro receber por áudio",
        "ok",
    )

    summary = summarizer.build("conv_1", messages)

    assert summary.message_count == 5
    assert summary.topics == ["nutrition", "exercise", "general"]
    assert {"type": "importance", "content": "This is important.",
            "timestamp": messages[0].timestamp.isoformat()} in summary.key_points
    assert [item["type"] for item in summary.action_items] == ["schedule"]
    assert summary.action_items[0]["status"] == "pending"
    assert summary.user_preferences["communication"] == "voice"
    assert summary.user_preferences["topics"] == ["nutrition", "exercise", "productivity"]
    assert summary.sentiment["positive"] == pytest.approx(20.0)
    assert summary.sentiment["overall"] == "neutral"
    assert summary.summary.startswith("Conversation about: nutrition, exercise, general")
    assert summary.summary.endswith("Total messages: 5")
