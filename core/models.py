#!/usr/bin/env python3
"""
Engine Data Model
Messages, conversation summaries, per-user conversational context and
evolutionary profile, plus the bounded log backing every sliding window.
Everything here serializes to plain JSON-friendly dicts with snake_case keys.
"""

import uuid
from collections import deque
from dataclasses import dataclass, field, asdict, replace
from datetime import datetime
from typing import Dict, Any, List, Optional, Iterable, Iterator, Callable

ARCHIVED_MESSAGE_CATEGORY = "message"
EVOLUTION_STAGES = ("beginner", "learning", "adapting", "expert")

# Sliding window capacities
INTERACTION_HISTORY_SIZE = 100
ERROR_PATTERNS_SIZE = 20
SUCCESS_PATTERNS_SIZE = 50
APPLIED_ADAPTATIONS_SIZE = 50
RECENT_TOPICS_SIZE = 5
TOPIC_CHANGES_SIZE = 100


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, float(value)))


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def from_iso(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:12]}"


def new_conversation_id(now: datetime) -> str:
    return f"conv_{int(now.timestamp())}_{uuid.uuid4().hex[:9]}"


class BoundedLog:
    """
    Fixed-capacity sliding window.
    Appending past capacity evicts the oldest entry in O(1) and hands it
    back to the caller, so nothing is dropped without the caller seeing it.
    """

    def __init__(self, capacity: int, items: Optional[Iterable[Any]] = None):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._items = deque(maxlen=capacity)
        if items:
            self.extend(items)

    def append(self, item: Any) -> Optional[Any]:
        """Append an item, returning the evicted oldest entry (or None)"""
        evicted = self._items[0] if len(self._items) == self.capacity else None
        self._items.append(item)
        return evicted

    def extend(self, items: Iterable[Any]) -> List[Any]:
        evicted = []
        for item in items:
            dropped = self.append(item)
            if dropped is not None:
                evicted.append(dropped)
        return evicted

    def replace(self, items: Iterable[Any]) -> List[Any]:
        self._items.clear()
        return self.extend(items)

    def retain(self, predicate: Callable[[Any], bool]) -> int:
        """Keep only entries matching predicate; returns how many were removed"""
        kept = [item for item in self._items if predicate(item)]
        removed = len(self._items) - len(kept)
        self._items = deque(kept, maxlen=self.capacity)
        return removed

    def tail(self, n: int) -> List[Any]:
        if n <= 0:
            return []
        return list(self._items)[-n:]

    def clear(self):
        self._items.clear()

    def to_list(self) -> List[Any]:
        return list(self._items)

    def __getitem__(self, index: int) -> Any:
        return self._items[index]

    def __iter__(self) -> Iterator[Any]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"BoundedLog(capacity={self.capacity}, size={len(self._items)})"


@dataclass
class Message:
    """A recorded chat message. Only `processed` may change after creation."""
    id: str
    timestamp: datetime
    type: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    processed: bool = False
    category: Optional[str] = None
    conversation_id: Optional[str] = None

    def __setattr__(self, name, value):
        if name != "processed" and name in self.__dict__:
            raise AttributeError(f"Message.{name} cannot be changed once created")
        super().__setattr__(name, value)

    @property
    def is_archived(self) -> bool:
        return self.category == ARCHIVED_MESSAGE_CATEGORY

    def archived(self) -> "Message":
        """Copy tagged as auto-archived overflow"""
        return replace(self, category=ARCHIVED_MESSAGE_CATEGORY)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": to_iso(self.timestamp),
            "type": self.type,
            "content": self.content,
            "metadata": dict(self.metadata),
            "processed": self.processed,
            "category": self.category,
            "conversation_id": self.conversation_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            id=data["id"],
            timestamp=from_iso(data["timestamp"]),
            type=data.get("type", "text"),
            content=data.get("content", ""),
            metadata=data.get("metadata") or {},
            processed=bool(data.get("processed", False)),
            category=data.get("category"),
            conversation_id=data.get("conversation_id")
        )


@dataclass
class TopicChange:
    timestamp: datetime
    from_topic: str
    to_topic: str
    confidence: float
    similarity: float

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = to_iso(self.timestamp)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TopicChange":
        return cls(
            timestamp=from_iso(data["timestamp"]),
            from_topic=data["from_topic"],
            to_topic=data["to_topic"],
            confidence=float(data["confidence"]),
            similarity=float(data.get("similarity", 1 - float(data["confidence"])))
        )


@dataclass(frozen=True)
class ConversationSummary:
    """Compressed view of a message window; never mutated after creation"""
    conversation_id: str
    start_time: datetime
    end_time: datetime
    message_count: int
    topics: List[str]
    key_points: List[Dict[str, Any]]
    user_preferences: Dict[str, Any]
    action_items: List[Dict[str, Any]]
    sentiment: Dict[str, Any]
    summary: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "start_time": to_iso(self.start_time),
            "end_time": to_iso(self.end_time),
            "message_count": self.message_count,
            "topics": list(self.topics),
            "key_points": [dict(point) for point in self.key_points],
            "user_preferences": dict(self.user_preferences),
            "action_items": [dict(item) for item in self.action_items],
            "sentiment": dict(self.sentiment),
            "summary": self.summary
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationSummary":
        return cls(
            conversation_id=data["conversation_id"],
            start_time=from_iso(data["start_time"]),
            end_time=from_iso(data["end_time"]),
            message_count=int(data["message_count"]),
            topics=list(data.get("topics", [])),
            key_points=list(data.get("key_points", [])),
            user_preferences=dict(data.get("user_preferences", {})),
            action_items=list(data.get("action_items", [])),
            sentiment=dict(data.get("sentiment", {})),
            summary=data.get("summary", "")
        )


@dataclass
class UserContext:
    """Conversational memory of one user"""
    user_id: str
    conversation_id: str
    short_term: BoundedLog
    created_at: datetime
    last_activity: datetime
    long_term: List[Message] = field(default_factory=list)
    topic_changes: BoundedLog = field(default_factory=lambda: BoundedLog(TOPIC_CHANGES_SIZE))
    current_topic: Optional[str] = None
    context_summary: Optional[ConversationSummary] = None
    summaries: List[ConversationSummary] = field(default_factory=list)

    @classmethod
    def create(cls, user_id: str, now: datetime, max_short_term: int) -> "UserContext":
        return cls(
            user_id=user_id,
            conversation_id=new_conversation_id(now),
            short_term=BoundedLog(max_short_term),
            created_at=now,
            last_activity=now
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "conversation_id": self.conversation_id,
            "short_term": [message.to_dict() for message in self.short_term],
            "long_term": [message.to_dict() for message in self.long_term],
            "topic_changes": [change.to_dict() for change in self.topic_changes],
            "current_topic": self.current_topic,
            "context_summary": self.context_summary.to_dict() if self.context_summary else None,
            "summaries": [summary.to_dict() for summary in self.summaries],
            "created_at": to_iso(self.created_at),
            "last_activity": to_iso(self.last_activity)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], max_short_term: int) -> "UserContext":
        short_term = BoundedLog(max_short_term)
        long_term = [Message.from_dict(item) for item in data.get("long_term", [])]
        # A smaller configured window archives the surplus instead of losing it
        for evicted in short_term.extend(Message.from_dict(item) for item in data.get("short_term", [])):
            long_term.append(evicted.archived())

        summary = data.get("context_summary")
        return cls(
            user_id=data["user_id"],
            conversation_id=data["conversation_id"],
            short_term=short_term,
            created_at=from_iso(data.get("created_at") or data["last_activity"]),
            last_activity=from_iso(data["last_activity"]),
            long_term=long_term,
            topic_changes=BoundedLog(
                TOPIC_CHANGES_SIZE,
                (TopicChange.from_dict(item) for item in data.get("topic_changes", []))
            ),
            current_topic=data.get("current_topic"),
            context_summary=ConversationSummary.from_dict(summary) if summary else None,
            summaries=[ConversationSummary.from_dict(item) for item in data.get("summaries", [])]
        )


def _default_communication_patterns() -> Dict[str, bool]:
    return {"polite": False, "formal": False, "enthusiastic": False, "technical": False}


def _default_usage_stats() -> Dict[str, Any]:
    return {"total_messages": 0, "message_types": {}, "hourly_usage": {}, "daily_usage": {}}


def default_profile_preferences() -> Dict[str, Any]:
    return {
        "communication": "text",
        "privacy": "standard",
        "notifications": True,
        "timezone": None,
        "language": "pt-BR",
        "data_retention": 30,
        "learning_enabled": True,
        "profile_sharing": False
    }


@dataclass
class UserProfile:
    """Long-term preference snapshot kept beside the conversational context"""
    user_id: str
    created_at: datetime
    last_updated: datetime
    interests: List[str] = field(default_factory=list)
    communication_patterns: Dict[str, bool] = field(default_factory=_default_communication_patterns)
    usage_stats: Dict[str, Any] = field(default_factory=_default_usage_stats)
    preferences: Dict[str, Any] = field(default_factory=default_profile_preferences)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = to_iso(self.created_at)
        data["last_updated"] = to_iso(self.last_updated)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserProfile":
        preferences = default_profile_preferences()
        preferences.update(data.get("preferences", {}))
        usage_stats = _default_usage_stats()
        usage_stats.update(data.get("usage_stats", {}))
        patterns = _default_communication_patterns()
        patterns.update(data.get("communication_patterns", {}))
        return cls(
            user_id=data["user_id"],
            created_at=from_iso(data["created_at"]),
            last_updated=from_iso(data["last_updated"]),
            interests=list(data.get("interests", [])),
            communication_patterns=patterns,
            usage_stats=usage_stats,
            preferences=preferences
        )


@dataclass
class InteractionRecord:
    timestamp: datetime
    type: str
    data: Dict[str, Any]
    success: bool
    feedback: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": to_iso(self.timestamp),
            "type": self.type,
            "data": dict(self.data),
            "success": self.success,
            "feedback": self.feedback
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InteractionRecord":
        return cls(
            timestamp=from_iso(data["timestamp"]),
            type=data["type"],
            data=dict(data.get("data") or {}),
            success=bool(data.get("success", True)),
            feedback=data.get("feedback")
        )


@dataclass
class Adaptation:
    type: str
    rule: str
    action: str
    weight: float
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = to_iso(self.timestamp)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Adaptation":
        return cls(
            type=data["type"],
            rule=data["rule"],
            action=data["action"],
            weight=float(data["weight"]),
            timestamp=from_iso(data["timestamp"])
        )


@dataclass
class Predictions:
    next_command: Optional[str] = None
    next_topic: Optional[str] = None
    next_time: Optional[int] = None
    confidence: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LearnedPreferences:
    communication_style: str = "neutral"
    formality_level: float = 0.5
    response_length: str = "medium"
    topic_interests: List[str] = field(default_factory=list)
    time_preferences: Dict[int, int] = field(default_factory=dict)
    interaction_patterns: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["time_preferences"] = {str(hour): count for hour, count in self.time_preferences.items()}
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LearnedPreferences":
        return cls(
            communication_style=data.get("communication_style", "neutral"),
            formality_level=clamp(data.get("formality_level", 0.5)),
            response_length=data.get("response_length", "medium"),
            topic_interests=list(data.get("topic_interests", [])),
            time_preferences={int(hour): int(count) for hour, count in data.get("time_preferences", {}).items()},
            interaction_patterns=dict(data.get("interaction_patterns", {}))
        )


@dataclass
class LearnedBehavior:
    command_usage: Dict[str, int] = field(default_factory=dict)
    response_time: Optional[float] = None
    error_patterns: BoundedLog = field(default_factory=lambda: BoundedLog(ERROR_PATTERNS_SIZE))
    success_patterns: BoundedLog = field(default_factory=lambda: BoundedLog(SUCCESS_PATTERNS_SIZE))
    adaptation_level: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command_usage": dict(self.command_usage),
            "response_time": self.response_time,
            "error_patterns": self.error_patterns.to_list(),
            "success_patterns": self.success_patterns.to_list(),
            "adaptation_level": self.adaptation_level
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LearnedBehavior":
        return cls(
            command_usage=dict(data.get("command_usage", {})),
            response_time=data.get("response_time"),
            error_patterns=BoundedLog(ERROR_PATTERNS_SIZE, data.get("error_patterns", [])),
            success_patterns=BoundedLog(SUCCESS_PATTERNS_SIZE, data.get("success_patterns", [])),
            adaptation_level=clamp(data.get("adaptation_level", 0.0))
        )


@dataclass
class LearnedContext:
    conversation_topics: List[str] = field(default_factory=list)
    session_length: Optional[float] = None
    interaction_frequency: int = 0
    context_switches: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LearnedContext":
        return cls(
            conversation_topics=list(data.get("conversation_topics", [])),
            session_length=data.get("session_length"),
            interaction_frequency=int(data.get("interaction_frequency", 0)),
            context_switches=int(data.get("context_switches", 0))
        )


@dataclass
class EvolutionMetrics:
    learning_rate: float = 0.1
    adaptation_score: float = 0.0
    prediction_accuracy: float = 0.0
    user_satisfaction: float = 0.0
    evolution_stage: str = "beginner"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EvolutionMetrics":
        stage = data.get("evolution_stage", "beginner")
        return cls(
            learning_rate=clamp(data.get("learning_rate", 0.1)),
            adaptation_score=clamp(data.get("adaptation_score", 0.0)),
            prediction_accuracy=clamp(data.get("prediction_accuracy", 0.0)),
            user_satisfaction=clamp(data.get("user_satisfaction", 0.0)),
            evolution_stage=stage if stage in EVOLUTION_STAGES else "beginner"
        )


@dataclass
class EvolutionaryProfile:
    """Accumulating per-user model of preferences, behavior and predictions"""
    user_id: str
    created_at: datetime
    last_updated: datetime
    version: str = "1.0"
    interaction_history: BoundedLog = field(default_factory=lambda: BoundedLog(INTERACTION_HISTORY_SIZE))
    total_interactions: int = 0
    successful_interactions: int = 0
    failed_interactions: int = 0
    learned_preferences: LearnedPreferences = field(default_factory=LearnedPreferences)
    learned_behavior: LearnedBehavior = field(default_factory=LearnedBehavior)
    learned_context: LearnedContext = field(default_factory=LearnedContext)
    evolution_metrics: EvolutionMetrics = field(default_factory=EvolutionMetrics)
    applied_adaptations: BoundedLog = field(default_factory=lambda: BoundedLog(APPLIED_ADAPTATIONS_SIZE))
    predictions: Predictions = field(default_factory=Predictions)
    recent_topics: BoundedLog = field(default_factory=lambda: BoundedLog(RECENT_TOPICS_SIZE))
    learning_enabled: bool = True

    @classmethod
    def create(cls, user_id: str, now: datetime) -> "EvolutionaryProfile":
        return cls(user_id=user_id, created_at=now, last_updated=now)

    def reset_learning(self):
        """Forget everything learned, keeping identity and counters"""
        self.learned_preferences = LearnedPreferences()
        self.learned_behavior = LearnedBehavior()
        self.learned_context = LearnedContext()
        self.predictions = Predictions()
        self.recent_topics.clear()
        self.applied_adaptations.clear()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "created_at": to_iso(self.created_at),
            "last_updated": to_iso(self.last_updated),
            "version": self.version,
            "interaction_history": [record.to_dict() for record in self.interaction_history],
            "total_interactions": self.total_interactions,
            "successful_interactions": self.successful_interactions,
            "failed_interactions": self.failed_interactions,
            "learned_preferences": self.learned_preferences.to_dict(),
            "learned_behavior": self.learned_behavior.to_dict(),
            "learned_context": self.learned_context.to_dict(),
            "evolution_metrics": self.evolution_metrics.to_dict(),
            "applied_adaptations": [adaptation.to_dict() for adaptation in self.applied_adaptations],
            "predictions": self.predictions.to_dict(),
            "recent_topics": self.recent_topics.to_list(),
            "learning_enabled": self.learning_enabled
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EvolutionaryProfile":
        predictions = data.get("predictions") or {}
        return cls(
            user_id=data["user_id"],
            created_at=from_iso(data["created_at"]),
            last_updated=from_iso(data["last_updated"]),
            version=data.get("version", "1.0"),
            interaction_history=BoundedLog(
                INTERACTION_HISTORY_SIZE,
                (InteractionRecord.from_dict(item) for item in data.get("interaction_history", []))
            ),
            total_interactions=int(data.get("total_interactions", 0)),
            successful_interactions=int(data.get("successful_interactions", 0)),
            failed_interactions=int(data.get("failed_interactions", 0)),
            learned_preferences=LearnedPreferences.from_dict(data.get("learned_preferences", {})),
            learned_behavior=LearnedBehavior.from_dict(data.get("learned_behavior", {})),
            learned_context=LearnedContext.from_dict(data.get("learned_context", {})),
            evolution_metrics=EvolutionMetrics.from_dict(data.get("evolution_metrics", {})),
            applied_adaptations=BoundedLog(
                APPLIED_ADAPTATIONS_SIZE,
                (Adaptation.from_dict(item) for item in data.get("applied_adaptations", []))
            ),
            predictions=Predictions(
                next_command=predictions.get("next_command"),
                next_topic=predictions.get("next_topic"),
                next_time=predictions.get("next_time"),
                confidence=clamp(predictions.get("confidence", 0.0))
            ),
            recent_topics=BoundedLog(RECENT_TOPICS_SIZE, data.get("recent_topics", [])),
            learning_enabled=bool(data.get("learning_enabled", True))
        )
