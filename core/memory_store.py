#!/usr/bin/env python3
"""
Memory Store
Per-user short-term message window, long-term archive and pinned notes,
topic-change detection, automatic summarization and the long-term
preference snapshot. Owns UserContext and UserProfile; everyone else reads
through the query methods below.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional, Callable

from core.classifiers import (
    CONTEXTUAL_QUERY_PATTERNS,
    FormalityClassifier,
    GENERAL_TOPIC,
    TopicClassifier,
    topic_similarity,
)
from core.locks import KeyedLock
from core.models import (
    ARCHIVED_MESSAGE_CATEGORY,
    ConversationSummary,
    Message,
    TopicChange,
    UserContext,
    UserProfile,
    new_conversation_id,
    new_message_id,
    to_iso,
)
from core.summarizer import ConversationSummarizer
from utils.config_loader import DAY_SECONDS
from utils.errors import ValidationError, require_text, require_user_id
from utils.kv_store import KeyValueStore
from utils.redis_logger import redact_user_id

logger = logging.getLogger(__name__)

CONTEXT_KEY_PREFIX = "user_context"
PROFILE_KEY_PREFIX = "user_profile"

RECENT_MESSAGES_VIEW = 5
RECENT_TOPIC_CHANGES_VIEW = 3
SMART_REFERENCE_LIMIT = 5
MIN_TOPIC_WINDOW = 2


def context_key(user_id: str) -> str:
    return f"{CONTEXT_KEY_PREFIX}:{user_id}"


def profile_key(user_id: str) -> str:
    return f"{PROFILE_KEY_PREFIX}:{user_id}"


class MemoryStore:
    """Short- and long-term conversational memory for every user"""

    def __init__(self,
                 store: KeyValueStore,
                 locks: Optional[KeyedLock] = None,
                 topic_classifier: Optional[TopicClassifier] = None,
                 formality_classifier: Optional[FormalityClassifier] = None,
                 summarizer: Optional[ConversationSummarizer] = None,
                 preferences_provider: Optional[Callable[[str], Optional[Dict[str, Any]]]] = None,
                 clock: Callable[[], datetime] = datetime.now,
                 max_short_term_messages: int = 100,
                 max_conversation_length: int = 100,
                 topic_change_threshold: float = 0.7,
                 topic_window_size: int = 10,
                 summary_keep_recent: int = 10,
                 memory_retention_days: int = 30,
                 context_ttl_seconds: int = 7 * DAY_SECONDS,
                 profile_ttl_seconds: int = 30 * DAY_SECONDS):
        self.store = store
        self.locks = locks or KeyedLock()
        self.topic_classifier = topic_classifier or TopicClassifier()
        self.formality_classifier = formality_classifier or FormalityClassifier()
        self.summarizer = summarizer or ConversationSummarizer(topic_classifier=self.topic_classifier)
        self.preferences_provider = preferences_provider
        self.clock = clock

        self.max_short_term_messages = max_short_term_messages
        self.max_conversation_length = max_conversation_length
        self.topic_change_threshold = topic_change_threshold
        self.topic_window_size = topic_window_size
        self.summary_keep_recent = summary_keep_recent
        self.memory_retention_days = memory_retention_days
        self.context_ttl_seconds = context_ttl_seconds
        self.profile_ttl_seconds = profile_ttl_seconds

        self.contexts: Dict[str, UserContext] = {}
        self.profiles: Dict[str, UserProfile] = {}

        logger.info("Memory Store initialized")

    # ------------------------------------------------------------------
    # Recording

    async def record_message(self, user_id: str, content: str, message_type: str = "text",
                             metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Append a message, detect topic drift, summarize when the window is full, persist"""
        user_id = require_user_id(user_id)
        content = require_text(content, "content", "Send some text so it can be remembered.")
        message_type = message_type or "text"

        async with self.locks.hold(user_id):
            context = await self._load_context(user_id, create=True)
            now = self.clock()

            message = Message(
                id=new_message_id(),
                timestamp=now,
                type=message_type,
                content=content,
                metadata=dict(metadata or {}),
                conversation_id=context.conversation_id
            )
            evicted = context.short_term.append(message)
            if evicted is not None:
                context.long_term.append(evicted.archived())

            topic = self.topic_classifier.label(content)
            topic_change = self._detect_topic_change(context, topic, now)
            if topic_change:
                context.topic_changes.append(topic_change)
            context.current_topic = topic

            summary = None
            if len(context.short_term) >= self.max_conversation_length:
                summary = self._summarize(context)

            context.last_activity = now
            profile = await self._load_profile(user_id, create=True)
            self._update_user_profile(profile, message, topic, now)

            await self._save_context(context)
            await self._save_profile(profile)

        return {
            "message_id": message.id,
            "conversation_id": context.conversation_id,
            "topic": topic,
            "topic_change": topic_change.to_dict() if topic_change else None,
            "needs_summary": len(context.short_term) >= self.max_conversation_length,
            "summary_created": summary is not None
        }

    def _detect_topic_change(self, context: UserContext, topic: str, now: datetime) -> Optional[TopicChange]:
        try:
            # Window of earlier messages; the newest entry is the message just appended
            window = context.short_term.tail(self.topic_window_size + 1)[:-1]
            if len(window) < MIN_TOPIC_WINDOW:
                return None

            previous_topics = [self.topic_classifier.label(message.content) for message in window]
            similarity = topic_similarity(previous_topics, [topic])
            if similarity >= self.topic_change_threshold:
                return None

            from_topic = max(previous_topics, key=previous_topics.count)
            return TopicChange(
                timestamp=now,
                from_topic=from_topic or GENERAL_TOPIC,
                to_topic=topic,
                confidence=1 - similarity,
                similarity=similarity
            )

        except Exception:
            logger.exception(f"Topic change detection failed for {redact_user_id(context.user_id)}")
            return None

    def _summarize(self, context: UserContext) -> Optional[ConversationSummary]:
        messages = context.short_term.to_list()
        summary = self.summarizer.build(context.conversation_id, messages)
        if summary is None:
            return None

        context.context_summary = summary
        context.summaries.append(summary)

        keep = messages[-self.summary_keep_recent:] if self.summary_keep_recent > 0 else []
        archived = messages[:len(messages) - len(keep)]
        context.long_term.extend(message.archived() for message in archived)
        context.short_term.replace(keep)
        context.conversation_id = new_conversation_id(self.clock())

        logger.info(
            f"Conversation summarized for {redact_user_id(context.user_id)}: "
            f"{summary.message_count} messages, topics {summary.topics}"
        )
        return summary

    def _update_user_profile(self, profile: UserProfile, message: Message, topic: str, now: datetime):
        try:
            stats = profile.usage_stats
            stats["total_messages"] += 1
            stats["message_types"][message.type] = stats["message_types"].get(message.type, 0) + 1

            hour = str(now.hour)
            stats["hourly_usage"][hour] = stats["hourly_usage"].get(hour, 0) + 1
            today = now.date().isoformat()
            stats["daily_usage"][today] = stats["daily_usage"].get(today, 0) + 1

            if topic != GENERAL_TOPIC and topic not in profile.interests:
                profile.interests.append(topic)

            formal, _ = self.formality_classifier.counts(message.content)
            lowered = message.content.lower()
            patterns = profile.communication_patterns
            if "obrigad" in lowered or "thank" in lowered:
                patterns["polite"] = True
            if formal:
                patterns["formal"] = True
            if "!" in lowered or "??" in lowered:
                patterns["enthusiastic"] = True

            profile.last_updated = now

        except Exception:
            logger.exception(f"User profile update failed for {redact_user_id(profile.user_id)}")

    # ------------------------------------------------------------------
    # Summaries and clearing

    async def summarize_conversation(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Force a summary of the current window; no-op below the minimum size"""
        user_id = require_user_id(user_id)
        async with self.locks.hold(user_id):
            context = await self._load_context(user_id)
            if context is None:
                return None
            summary = self._summarize(context)
            if summary is None:
                return None
            context.last_activity = self.clock()
            await self._save_context(context)
            return summary.to_dict()

    async def clear_context(self, user_id: str) -> Dict[str, Any]:
        """Summarize what is pending, then reset the conversation. Long-term entries survive."""
        user_id = require_user_id(user_id)
        async with self.locks.hold(user_id):
            context = await self._load_context(user_id)
            if context is None:
                return {"cleared": False, "conversation_id": None, "summary": None}

            summary = self._summarize(context) if len(context.short_term) else None

            context.short_term.clear()
            context.topic_changes.clear()
            context.current_topic = None
            context.context_summary = None
            context.conversation_id = new_conversation_id(self.clock())
            context.last_activity = self.clock()
            await self._save_context(context)

        logger.info(f"Context cleared for {redact_user_id(user_id)}")
        return {
            "cleared": True,
            "conversation_id": context.conversation_id,
            "summary": summary.to_dict() if summary else None
        }

    # ------------------------------------------------------------------
    # Pinned notes

    async def save_important_info(self, user_id: str, info: str, category: str = "general") -> Dict[str, Any]:
        user_id = require_user_id(user_id)
        info = require_text(info, "info", "Tell me what should be remembered.")
        category = require_text(category, "category", "Pick a category such as 'general'.")
        if category == ARCHIVED_MESSAGE_CATEGORY:
            raise ValidationError(
                f"Category '{ARCHIVED_MESSAGE_CATEGORY}' is reserved",
                field="category",
                hint="Choose another category name for your note."
            )

        async with self.locks.hold(user_id):
            context = await self._load_context(user_id, create=True)
            now = self.clock()
            note = Message(
                id=new_message_id(),
                timestamp=now,
                type="note",
                content=info,
                category=category,
                conversation_id=context.conversation_id
            )
            context.long_term.append(note)
            context.last_activity = now
            await self._save_context(context)

        logger.info(f"Important info saved for {redact_user_id(user_id)} in category {category}")
        return {"info_id": note.id, "category": category, "timestamp": to_iso(note.timestamp)}

    async def get_important_info(self, user_id: str, category: Optional[str] = None) -> Dict[str, Any]:
        """User-pinned notes, newest first"""
        user_id = require_user_id(user_id)
        context = await self._load_context(user_id)
        if context is None:
            return {"info": [], "count": 0}

        notes = [entry for entry in context.long_term if not entry.is_archived and entry.category]
        if category:
            notes = [entry for entry in notes if entry.category == category]
        notes.sort(key=lambda entry: entry.timestamp, reverse=True)

        return {"info": [entry.to_dict() for entry in notes], "count": len(notes)}

    # ------------------------------------------------------------------
    # Queries

    async def get_current_context(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Read-only projection of the context, or None when there is none yet"""
        user_id = require_user_id(user_id)
        try:
            context = await self._load_context(user_id)
            if context is None:
                return None
            profile = await self._load_profile(user_id)

            evolutionary_preferences = None
            if self.preferences_provider:
                evolutionary_preferences = self.preferences_provider(user_id)

            return {
                "conversation_id": context.conversation_id,
                "message_count": len(context.short_term),
                "current_topic": context.current_topic,
                "recent_messages": [m.to_dict() for m in context.short_term.tail(RECENT_MESSAGES_VIEW)],
                "topic_changes": [c.to_dict() for c in context.topic_changes.tail(RECENT_TOPIC_CHANGES_VIEW)],
                "context_summary": context.context_summary.to_dict() if context.context_summary else None,
                "user_profile": {
                    "interests": list(profile.interests),
                    "communication_patterns": dict(profile.communication_patterns),
                    "preferences": dict(profile.preferences)
                } if profile else None,
                "evolutionary_preferences": evolutionary_preferences,
                "last_activity": to_iso(context.last_activity)
            }

        except Exception:
            logger.exception(f"Could not build context view for {redact_user_id(user_id)}")
            return None

    async def get_messages(self, user_id: str, include_long_term: bool = False) -> List[Message]:
        """Chronological message history (short-term only, or merged with the archive)"""
        context = await self._load_context(user_id)
        if context is None:
            return []
        messages = context.short_term.to_list()
        if include_long_term:
            messages = sorted(context.long_term + messages, key=lambda message: message.timestamp)
        return messages

    async def find_smart_references(self, user_id: str, query: str) -> Dict[str, Any]:
        """Direct substring and contextual-pattern matches, best five by confidence then recency"""
        user_id = require_user_id(user_id)
        query = require_text(query, "query", "Say what you are looking for.").lower()

        context = await self._load_context(user_id)
        if context is None:
            return {"references": [], "count": 0}

        keywords = self._contextual_keywords(query)
        references = []
        for message in list(context.short_term) + context.long_term:
            content = message.content.lower()
            if query in content:
                references.append(self._reference(message, "direct", 1.0))
            if keywords and any(keyword in content for keyword in keywords):
                references.append(self._reference(message, "contextual", 0.8))

        references.sort(key=lambda ref: ref["timestamp"], reverse=True)
        references.sort(key=lambda ref: ref["confidence"], reverse=True)

        return {"references": references[:SMART_REFERENCE_LIMIT], "count": len(references)}

    @staticmethod
    def _contextual_keywords(query: str) -> List[str]:
        for phrase, keywords in CONTEXTUAL_QUERY_PATTERNS.items():
            if phrase in query:
                return keywords
        return []

    @staticmethod
    def _reference(message: Message, kind: str, confidence: float) -> Dict[str, Any]:
        return {
            "type": kind,
            "message_id": message.id,
            "content": message.content,
            "timestamp": to_iso(message.timestamp),
            "confidence": confidence
        }

    async def get_user_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        profile = await self._load_profile(user_id)
        return profile.to_dict() if profile else None

    async def export_context(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Full serialized context, for data export"""
        context = await self._load_context(user_id)
        return context.to_dict() if context else None

    async def set_privacy_settings(self, user_id: str, settings: Dict[str, Any]) -> Dict[str, Any]:
        user_id = require_user_id(user_id)
        async with self.locks.hold(user_id):
            profile = await self._load_profile(user_id, create=True)
            preferences = profile.preferences
            preferences["privacy"] = settings.get("privacy") or "standard"
            preferences["data_retention"] = settings.get("data_retention") or 30
            preferences["learning_enabled"] = settings.get("learning_enabled") is not False
            preferences["profile_sharing"] = bool(settings.get("profile_sharing", False))
            profile.last_updated = self.clock()
            await self._save_profile(profile)

        logger.info(f"Privacy preferences updated for {redact_user_id(user_id)}: {preferences['privacy']}")
        return dict(preferences)

    def get_context_stats(self) -> Dict[str, Any]:
        contexts = list(self.contexts.values())
        return {
            "active_users": len(contexts),
            "total_profiles": len(self.profiles),
            "memory_usage": {
                "short_term": sum(len(context.short_term) for context in contexts),
                "long_term": sum(len(context.long_term) for context in contexts)
            },
            "topic_changes": sum(len(context.topic_changes) for context in contexts),
            "conversations_summarized": sum(len(context.summaries) for context in contexts)
        }

    # ------------------------------------------------------------------
    # Retention and deletion

    async def cleanup_old_data(self, retention_days: Optional[int] = None) -> Dict[str, Any]:
        """Drop archive entries, summaries and daily usage older than the retention window"""
        days = self.memory_retention_days if retention_days is None else retention_days
        cutoff = self.clock() - timedelta(days=days)
        processed = 0

        for user_id in list(self.contexts):
            async with self.locks.hold(user_id):
                context = self.contexts.get(user_id)
                if context is None:
                    continue
                context.long_term = [entry for entry in context.long_term if entry.timestamp > cutoff]
                context.summaries = [summary for summary in context.summaries if summary.end_time > cutoff]
                await self._save_context(context)
                processed += 1

        cutoff_day = cutoff.date().isoformat()
        for user_id in list(self.profiles):
            async with self.locks.hold(user_id):
                profile = self.profiles.get(user_id)
                if profile is None:
                    continue
                daily = profile.usage_stats["daily_usage"]
                profile.usage_stats["daily_usage"] = {day: n for day, n in daily.items() if day >= cutoff_day}
                await self._save_profile(profile)

        logger.info(f"Memory cleanup processed {processed} users (cutoff {cutoff.isoformat()})")
        return {"users_processed": processed, "cutoff_date": cutoff.isoformat()}

    async def apply_data_retention(self, user_id: str, retention_days: int) -> int:
        """Remove one user's messages older than retention_days; returns the number removed"""
        cutoff = self.clock() - timedelta(days=retention_days)
        async with self.locks.hold(user_id):
            context = await self._load_context(user_id)
            if context is None:
                return 0
            removed = context.short_term.retain(lambda message: message.timestamp > cutoff)
            kept = [entry for entry in context.long_term if entry.timestamp > cutoff]
            removed += len(context.long_term) - len(kept)
            context.long_term = kept
            await self._save_context(context)
        return removed

    async def delete_user(self, user_id: str) -> List[str]:
        """Forget a user in memory and in the store"""
        async with self.locks.hold(user_id):
            self.contexts.pop(user_id, None)
            self.profiles.pop(user_id, None)
            deleted = []
            for key in (context_key(user_id), profile_key(user_id)):
                try:
                    await self.store.delete(key)
                    deleted.append(key.split(":", 1)[0])
                except Exception as e:
                    logger.error(f"Failed to delete {key.split(':', 1)[0]} for {redact_user_id(user_id)}: {e}")
        return deleted

    # ------------------------------------------------------------------
    # Persistence

    async def _load_context(self, user_id: str, create: bool = False) -> Optional[UserContext]:
        context = self.contexts.get(user_id)
        if context is not None:
            return context

        data = await self._read(context_key(user_id), user_id)
        if data is not None:
            try:
                context = UserContext.from_dict(data, self.max_short_term_messages)
            except (KeyError, TypeError, ValueError) as e:
                logger.error(f"Discarding unreadable context for {redact_user_id(user_id)}: {e}")
                context = None

        # Another task may have installed this user's context while we awaited the store
        if user_id in self.contexts:
            return self.contexts[user_id]

        if context is None and create:
            context = UserContext.create(user_id, self.clock(), self.max_short_term_messages)
            logger.info(f"New conversation context for {redact_user_id(user_id)}")

        if context is not None:
            self.contexts[user_id] = context
        return context

    async def _load_profile(self, user_id: str, create: bool = False) -> Optional[UserProfile]:
        profile = self.profiles.get(user_id)
        if profile is not None:
            return profile

        data = await self._read(profile_key(user_id), user_id)
        if data is not None:
            try:
                profile = UserProfile.from_dict(data)
            except (KeyError, TypeError, ValueError) as e:
                logger.error(f"Discarding unreadable profile for {redact_user_id(user_id)}: {e}")
                profile = None

        if user_id in self.profiles:
            return self.profiles[user_id]

        if profile is None and create:
            now = self.clock()
            profile = UserProfile(user_id=user_id, created_at=now, last_updated=now)

        if profile is not None:
            self.profiles[user_id] = profile
        return profile

    async def _read(self, key: str, user_id: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self.store.get(key)
            return json.loads(raw) if raw else None
        except Exception as e:
            logger.error(f"Failed to load {key.split(':', 1)[0]} for {redact_user_id(user_id)}: {e}")
            return None

    async def _save_context(self, context: UserContext):
        await self._write(context_key(context.user_id), context.to_dict(), self.context_ttl_seconds,
                          context.user_id)

    async def _save_profile(self, profile: UserProfile):
        await self._write(profile_key(profile.user_id), profile.to_dict(), self.profile_ttl_seconds,
                          profile.user_id)

    async def _write(self, key: str, payload: Dict[str, Any], ttl_seconds: int, user_id: str):
        # In-memory state stands even when the store write fails
        try:
            await self.store.set(key, json.dumps(payload), ttl_seconds)
        except Exception as e:
            logger.error(f"Failed to persist {key.split(':', 1)[0]} for {redact_user_id(user_id)}: {e}")
