#!/usr/bin/env python3
"""
Conversation Summarizer
Compresses a window of messages into a ConversationSummary: distinct topics,
sentence-level key points, stated preferences, action items, a three-bucket
sentiment tally and a human-readable digest.
"""

import logging
import re
from typing import Dict, Any, List, Optional, Sequence, Tuple, Pattern

from core.classifiers import (
    ACTION_ITEM_MARKERS,
    GENERAL_TOPIC,
    InterestClassifier,
    KEY_POINT_MARKERS,
    PRIVACY_HIGH_MARKERS,
    PRIVACY_LOW_MARKERS,
    PRIVACY_MARKERS,
    SentimentClassifier,
    TEXT_MARKERS,
    TopicClassifier,
    VOICE_MARKERS,
    keyword_pattern,
)
from core.models import ConversationSummary, Message, to_iso

logger = logging.getLogger(__name__)

MIN_MESSAGES_TO_SUMMARIZE = 5
DIGEST_ITEMS = 3

SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|\n+")


def split_sentences(text: str) -> List[str]:
    return [sentence.strip() for sentence in SENTENCE_SPLIT.split(text or "") if sentence.strip()]


class ConversationSummarizer:
    """Builds immutable summaries from message windows"""

    def __init__(self,
                 topic_classifier: Optional[TopicClassifier] = None,
                 interest_classifier: Optional[InterestClassifier] = None,
                 sentiment_classifier: Optional[SentimentClassifier] = None,
                 min_messages: int = MIN_MESSAGES_TO_SUMMARIZE):
        self.topic_classifier = topic_classifier or TopicClassifier()
        self.interest_classifier = interest_classifier or InterestClassifier()
        self.sentiment_classifier = sentiment_classifier or SentimentClassifier()
        self.min_messages = min_messages

        self.key_point_patterns = self._compile(KEY_POINT_MARKERS)
        self.action_item_patterns = self._compile(ACTION_ITEM_MARKERS)
        self.voice_pattern = keyword_pattern(VOICE_MARKERS)
        self.text_pattern = keyword_pattern(TEXT_MARKERS)
        self.privacy_pattern = keyword_pattern(PRIVACY_MARKERS)
        self.privacy_high_pattern = keyword_pattern(PRIVACY_HIGH_MARKERS, whole_word=True)
        self.privacy_low_pattern = keyword_pattern(PRIVACY_LOW_MARKERS, whole_word=True)

    @staticmethod
    def _compile(table: List[Tuple[str, List[str]]]) -> List[Tuple[str, Pattern]]:
        return [(label, keyword_pattern(keywords)) for label, keywords in table]

    def build(self, conversation_id: str, messages: Sequence[Message]) -> Optional[ConversationSummary]:
        """Summary of the window, or None when it is too short to summarize"""
        if len(messages) < self.min_messages:
            return None

        topics = self.extract_topics(messages)
        key_points = self.extract_key_points(messages)
        action_items = self.extract_action_items(messages)

        return ConversationSummary(
            conversation_id=conversation_id,
            start_time=messages[0].timestamp,
            end_time=messages[-1].timestamp,
            message_count=len(messages),
            topics=topics,
            key_points=key_points,
            user_preferences=self.extract_user_preferences(messages),
            action_items=action_items,
            sentiment=self.analyze_sentiment(messages),
            summary=self.compose_digest(topics, key_points, action_items, len(messages))
        )

    def extract_topics(self, messages: Sequence[Message]) -> List[str]:
        """Distinct topic labels in order of first appearance"""
        topics = []
        for message in messages:
            label = self.topic_classifier.label(message.content)
            if label not in topics:
                topics.append(label)
        return topics

    def extract_key_points(self, messages: Sequence[Message]) -> List[Dict[str, Any]]:
        key_points = []
        for message in messages:
            for sentence in split_sentences(message.content):
                for point_type, pattern in self.key_point_patterns:
                    if pattern.search(sentence):
                        key_points.append({
                            "type": point_type,
                            "content": sentence,
                            "timestamp": to_iso(message.timestamp)
                        })
        return key_points

    def extract_user_preferences(self, messages: Sequence[Message]) -> Dict[str, Any]:
        preferences = {
            "communication": "text",
            "topics": [],
            "timezone": None,
            "language": "pt-BR",
            "notifications": True,
            "privacy": "standard"
        }

        for message in messages:
            content = message.content

            if self.voice_pattern.search(content):
                preferences["communication"] = "voice"
            elif self.text_pattern.search(content):
                preferences["communication"] = "text"

            for interest in self.interest_classifier.all_labels(content):
                if interest not in preferences["topics"]:
                    preferences["topics"].append(interest)

            if self.privacy_pattern.search(content):
                if self.privacy_high_pattern.search(content):
                    preferences["privacy"] = "high"
                elif self.privacy_low_pattern.search(content):
                    preferences["privacy"] = "low"

        return preferences

    def extract_action_items(self, messages: Sequence[Message]) -> List[Dict[str, Any]]:
        action_items = []
        for message in messages:
            for item_type, pattern in self.action_item_patterns:
                if pattern.search(message.content):
                    action_items.append({
                        "type": item_type,
                        "content": message.content,
                        "timestamp": to_iso(message.timestamp),
                        "status": "pending"
                    })
        return action_items

    def analyze_sentiment(self, messages: Sequence[Message]) -> Dict[str, Any]:
        """Per-message buckets as percentages; the majority bucket wins, ties are neutral"""
        counts = {"positive": 0, "negative": 0, "neutral": 0}
        for message in messages:
            counts[self.sentiment_classifier.classify(message.content).label] += 1

        total = sum(counts.values())
        top = max(counts.values())
        leaders = [bucket for bucket, count in counts.items() if count == top]

        return {
            "positive": counts["positive"] / total * 100 if total else 0.0,
            "negative": counts["negative"] / total * 100 if total else 0.0,
            "neutral": counts["neutral"] / total * 100 if total else 0.0,
            "overall": leaders[0] if len(leaders) == 1 else "neutral"
        }

    def compose_digest(self, topics: List[str], key_points: List[Dict[str, Any]],
                       action_items: List[Dict[str, Any]], message_count: int) -> str:
        lines = [f"Conversation about: {', '.join(topics) or GENERAL_TOPIC}", ""]

        if key_points:
            lines.append("Key points:")
            lines.extend(f"• {point['content']}" for point in key_points[:DIGEST_ITEMS])
            lines.append("")

        if action_items:
            lines.append("Pending actions:")
            lines.extend(f"• {item['content']}" for item in action_items[:DIGEST_ITEMS])
            lines.append("")

        lines.append(f"Total messages: {message_count}")
        return "\n".join(lines)
