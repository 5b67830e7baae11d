#!/usr/bin/env python3
"""
Memory Engine
Composition root: builds the store, the three components and the privacy
gate from configuration, owns their init/shutdown lifecycle and runs the
inbound message control flow (record -> learn -> resolve references).
"""

from datetime import datetime
from typing import Dict, Any, Optional, Callable

from core.classifiers import FormalityClassifier, InterestClassifier, TopicClassifier
from core.locks import KeyedLock
from core.memory_store import MemoryStore
from core.privacy_gate import PrivacyGate
from core.profile_evolver import InteractionEvent, ProfileEvolver
from core.reference_resolver import ReferenceResolver, ReplySender
from core.summarizer import ConversationSummarizer
from utils.config_loader import config as default_config
from utils.errors import require_text, require_user_id
from utils.kv_store import InMemoryKeyValueStore, KeyValueStore, create_store
from utils.redis_logger import get_redis_logger, redact_user_id

logger = get_redis_logger(__name__)


class MemoryEngine:
    """Conversational memory and personalization engine"""

    def __init__(self,
                 config: Optional[Dict[str, Any]] = None,
                 store: Optional[KeyValueStore] = None,
                 reply_sender: Optional[ReplySender] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.config = config if config is not None else default_config
        self.store = store if store is not None else create_store(self.config)
        self.clock = clock
        self.locks = KeyedLock()
        self.initialized = False

        topic_classifier = TopicClassifier()
        interest_classifier = InterestClassifier()
        formality_classifier = FormalityClassifier()

        self.evolver = ProfileEvolver(
            self.store,
            locks=self.locks,
            formality_classifier=formality_classifier,
            interest_classifier=interest_classifier,
            clock=clock,
            profile_ttl_seconds=self.config.get('profile_ttl_seconds', 30 * 86400),
            retention_days=self.config.get('memory_retention_days', 30)
        )
        self.memory = MemoryStore(
            self.store,
            locks=self.locks,
            topic_classifier=topic_classifier,
            formality_classifier=formality_classifier,
            summarizer=ConversationSummarizer(topic_classifier, interest_classifier),
            preferences_provider=self.evolver.get_learned_preferences,
            clock=clock,
            max_short_term_messages=self.config.get('max_short_term_messages', 100),
            max_conversation_length=self.config.get('max_conversation_length', 100),
            topic_change_threshold=self.config.get('topic_change_threshold', 0.7),
            topic_window_size=self.config.get('topic_window_size', 10),
            summary_keep_recent=self.config.get('summary_keep_recent', 10),
            memory_retention_days=self.config.get('memory_retention_days', 30),
            context_ttl_seconds=self.config.get('context_ttl_seconds', 7 * 86400),
            profile_ttl_seconds=self.config.get('profile_ttl_seconds', 30 * 86400)
        )
        self.resolver = ReferenceResolver(self.memory, reply_sender=reply_sender, clock=clock)
        self.privacy = PrivacyGate(
            self.store, self.memory, self.evolver, self.resolver,
            locks=self.locks,
            clock=clock,
            consent_retention_days=self.config.get('memory_retention_days', 30)
        )

    async def init(self):
        """Check the configured store, falling back to memory when it is unreachable"""
        try:
            await self.store.ping()
        except Exception as e:
            logger.warning(f"Store unavailable ({e}), falling back to in-memory store")
            await self._close_store()
            self._use_store(InMemoryKeyValueStore())
        self.initialized = True
        logger.info(f"Memory engine ready ({type(self.store).__name__})")

    async def shutdown(self):
        await self._close_store()
        self.initialized = False
        logger.info("Memory engine stopped")

    def _use_store(self, store: KeyValueStore):
        self.store = store
        for component in (self.memory, self.evolver, self.privacy):
            component.store = store

    async def _close_store(self):
        try:
            await self.store.close()
        except Exception as e:
            logger.warning(f"Error closing store: {e}")

    async def handle_inbound_message(self, user_id: str, text: str, message_type: str = "text",
                                     metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Record the message, feed the learning cycle and resolve any references"""
        user_id = require_user_id(user_id)
        text = require_text(text, "text", "Send some text.")
        metadata = metadata or {}

        if await self.privacy.is_user_opted_out(user_id):
            logger.info(f"Ignoring message from opted-out user {redact_user_id(user_id)}")
            return {"ignored": True, "reason": "opted_out"}

        interaction = {
            "type": "voice_command" if message_type == "audio" else "message",
            "data": {key: metadata[key] for key in ("session_length", "response_time", "command")
                     if key in metadata},
            "success": True,
            "feedback": metadata.get("feedback")
        }
        # Reject a malformed event before anything is stored, so a retry cannot record twice
        InteractionEvent.from_dict(interaction)

        recorded = await self.memory.record_message(user_id, text, message_type, metadata)

        interaction["data"].update({
            "message": text,
            "topic": recorded["topic"],
            "context_switch": recorded["topic_change"] is not None
        })
        evolution = await self.evolver.update_evolutionary_profile(user_id, interaction)

        references = {"has_references": False}
        if self.resolver.has_references(text):
            references = await self.resolver.process_smart_references(user_id, text)

        return {
            "ignored": False,
            "message": recorded,
            "adaptations": evolution["adaptations"],
            "references": references
        }

    async def cleanup_old_data(self) -> Dict[str, Any]:
        """Retention sweep over archives, summaries, interactions, adaptations and consents"""
        return {
            "memory": await self.memory.cleanup_old_data(),
            "profiles": await self.evolver.cleanup_old_data(),
            "consents": await self.privacy.cleanup_old_data()
        }

    def get_stats(self) -> Dict[str, Any]:
        return {
            "context": self.memory.get_context_stats(),
            "evolution": self.evolver.get_evolutionary_stats(),
            "references": self.resolver.get_reference_stats(),
            "privacy": self.privacy.get_privacy_stats()
        }
