#!/usr/bin/env python3
"""
Profile Evolver
Consumes interaction events and runs one learning cycle per event:
record, learn (preferences, behavior, context), fire adaptation rules
(tone, content, timing), recompute evolution metrics, persist.
Also derives frequency-based predictions and ranked suggestions.
"""

import json
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional, Callable

from core.classifiers import FormalityClassifier, InterestClassifier
from core.locks import KeyedLock
from core.models import (
    Adaptation,
    EvolutionaryProfile,
    EVOLUTION_STAGES,
    InteractionRecord,
    Predictions,
    clamp,
    to_iso,
)
from utils.config_loader import DAY_SECONDS
from utils.errors import ValidationError, require_user_id
from utils.kv_store import KeyValueStore
from utils.redis_logger import redact_user_id

logger = logging.getLogger(__name__)

EVOLUTIONARY_KEY_PREFIX = "evolutionary_profile"

ADAPTATION_WINDOW_DAYS = 7
FREQUENCY_WINDOW_MINUTES = 60
SATISFACTION_WINDOW = 10
QUESTION_THRESHOLD = 5
SHORT_RESPONSE_LENGTH = 50
LONG_SESSION_MINUTES = 30
QUICK_SESSION_MINUTES = 5
MORNING_HOURS = range(6, 11)
EVENING_HOURS = range(18, 23)
SUGGESTION_LIMIT = 3
REMINDER_COMMANDS = ("reminder", "lembrete")
REMINDER_USAGE_THRESHOLD = 5
PRIORITY_ORDER = {"high": 3, "medium": 2, "low": 1}

LEARNING_MODELS = {
    "preferences": {
        "description": "Learns user preferences",
        "features": ["communication_style", "topic_interests", "time_preferences", "interaction_patterns"],
        "learning_rate": 0.1
    },
    "behavior": {
        "description": "Learns behavior patterns",
        "features": ["command_usage", "response_time", "error_patterns", "success_patterns"],
        "learning_rate": 0.15
    },
    "context": {
        "description": "Learns usage context",
        "features": ["conversation_topics", "session_length", "interaction_frequency", "context_switches"],
        "learning_rate": 0.12
    }
}


def evolutionary_key(user_id: str) -> str:
    return f"{EVOLUTIONARY_KEY_PREFIX}:{user_id}"


def stage_for(total_interactions: int) -> str:
    if total_interactions < 10:
        return "beginner"
    if total_interactions < 50:
        return "learning"
    if total_interactions < 100:
        return "adapting"
    return "expert"


@dataclass
class InteractionEvent:
    """Validated input of one learning cycle"""
    type: str
    data: Dict[str, Any]
    success: bool = True
    feedback: Optional[float] = None

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "InteractionEvent":
        if not isinstance(payload, dict):
            raise ValidationError("Interaction must be a mapping", field="interaction",
                                  hint="Send an object with at least a 'type'.")
        event_type = payload.get("type")
        if not isinstance(event_type, str) or not event_type.strip():
            raise ValidationError("Interaction type is required", field="type",
                                  hint="Set 'type', for example 'message' or 'command'.")
        data = payload.get("data") or {}
        if not isinstance(data, dict):
            raise ValidationError("Interaction data must be a mapping", field="data",
                                  hint="Send 'data' as an object.")
        feedback = payload.get("feedback")
        if feedback is not None:
            try:
                feedback = float(feedback)
            except (TypeError, ValueError):
                raise ValidationError("Feedback must be a number", field="feedback",
                                      hint="Use a positive number for good, negative for bad.")
        success = payload.get("success", True)
        if not isinstance(success, bool):
            raise ValidationError("Success must be a boolean", field="success",
                                  hint="Send true or false.")
        return cls(
            type=event_type.strip(),
            data=dict(data),
            success=success,
            feedback=feedback
        )


@dataclass
class AdaptationRule:
    condition: str
    action: str
    weight: float
    description: str
    check: Callable[[EvolutionaryProfile, InteractionEvent], bool]


def _count_questions(profile: EvolutionaryProfile) -> int:
    return sum(1 for record in profile.interaction_history
               if isinstance(record.data.get("message"), str) and "?" in record.data["message"])


def _response_length_preference(profile: EvolutionaryProfile) -> str:
    responses = [record.data["response"] for record in profile.interaction_history
                 if isinstance(record.data.get("response"), str)]
    if not responses:
        return "medium"
    average = sum(len(response) for response in responses) / len(responses)
    if average < SHORT_RESPONSE_LENGTH:
        return "short"
    if average > 200:
        return "long"
    return "medium"


def _active_in(profile: EvolutionaryProfile, hours: range) -> bool:
    preferences = profile.learned_preferences.time_preferences
    return any(preferences.get(hour, 0) > 0 for hour in hours)


def default_adaptation_rules() -> Dict[str, List[AdaptationRule]]:
    return {
        "tone": [
            AdaptationRule("user_uses_formal_language", "increase_formality", 0.8,
                           "User writes formally",
                           lambda p, e: p.learned_preferences.formality_level > 0.7),
            AdaptationRule("user_uses_casual_language", "decrease_formality", 0.8,
                           "User writes casually",
                           lambda p, e: p.learned_preferences.formality_level < 0.3),
            AdaptationRule("user_asks_questions", "increase_helpfulness", 0.7,
                           "User asks many questions",
                           lambda p, e: _count_questions(p) > QUESTION_THRESHOLD),
            AdaptationRule("user_gives_feedback", "adapt_to_feedback", 0.9,
                           "User gives feedback",
                           lambda p, e: e.feedback is not None),
        ],
        "content": [
            AdaptationRule("user_interested_in_nutrition", "prioritize_nutrition_content", 0.8,
                           "User is interested in nutrition",
                           lambda p, e: "nutrition" in p.learned_preferences.topic_interests),
            AdaptationRule("user_interested_in_exercise", "prioritize_exercise_content", 0.8,
                           "User is interested in exercise",
                           lambda p, e: "exercise" in p.learned_preferences.topic_interests),
            AdaptationRule("user_uses_voice_commands", "optimize_for_voice", 0.7,
                           "User sends voice commands",
                           lambda p, e: e.type == "voice_command"),
            AdaptationRule("user_prefers_short_responses", "shorten_responses", 0.6,
                           "User prefers short responses",
                           lambda p, e: _response_length_preference(p) == "short"),
        ],
        "timing": [
            AdaptationRule("user_active_morning", "optimize_morning_interactions", 0.7,
                           "User is active in the morning",
                           lambda p, e: _active_in(p, MORNING_HOURS)),
            AdaptationRule("user_active_evening", "optimize_evening_interactions", 0.7,
                           "User is active in the evening",
                           lambda p, e: _active_in(p, EVENING_HOURS)),
            AdaptationRule("user_long_sessions", "prepare_for_long_sessions", 0.6,
                           "User has long sessions",
                           lambda p, e: (p.learned_context.session_length or 0) > LONG_SESSION_MINUTES),
            AdaptationRule("user_quick_sessions", "optimize_for_quick_sessions", 0.6,
                           "User has quick sessions",
                           lambda p, e: 0 < (p.learned_context.session_length or 0) < QUICK_SESSION_MINUTES),
        ]
    }


class ProfileEvolver:
    """Per-user evolutionary profile and the learning cycle that feeds it"""

    def __init__(self,
                 store: KeyValueStore,
                 locks: Optional[KeyedLock] = None,
                 formality_classifier: Optional[FormalityClassifier] = None,
                 interest_classifier: Optional[InterestClassifier] = None,
                 adaptation_rules: Optional[Dict[str, List[AdaptationRule]]] = None,
                 clock: Callable[[], datetime] = datetime.now,
                 profile_ttl_seconds: int = 30 * DAY_SECONDS,
                 retention_days: int = 30):
        self.store = store
        self.locks = locks or KeyedLock()
        self.formality_classifier = formality_classifier or FormalityClassifier()
        self.interest_classifier = interest_classifier or InterestClassifier()
        self.learning_models = LEARNING_MODELS
        self.adaptation_rules = adaptation_rules or default_adaptation_rules()
        self.clock = clock
        self.profile_ttl_seconds = profile_ttl_seconds
        self.retention_days = retention_days

        self.profiles: Dict[str, EvolutionaryProfile] = {}

        logger.info("Profile Evolver initialized")

    # ------------------------------------------------------------------
    # Learning cycle

    async def update_evolutionary_profile(self, user_id: str, interaction: Dict[str, Any]) -> Dict[str, Any]:
        """Run one learning cycle; returns the profile and the adaptations it fired"""
        user_id = require_user_id(user_id)
        event = InteractionEvent.from_dict(interaction)

        async with self.locks.hold(user_id):
            profile = await self._load_profile(user_id, create=True)
            if not profile.learning_enabled:
                return {"profile": profile.to_dict(), "adaptations": []}

            now = self.clock()
            profile.interaction_history.append(InteractionRecord(
                timestamp=now,
                type=event.type,
                data=event.data,
                success=event.success,
                feedback=event.feedback
            ))
            profile.total_interactions += 1
            if event.success:
                profile.successful_interactions += 1
            else:
                profile.failed_interactions += 1

            self._run_pass("preference learning", self._learn_preferences, profile, event, now)
            self._run_pass("behavior learning", self._learn_behavior, profile, event, now)
            self._run_pass("context learning", self._learn_context, profile, event, now)

            adaptations = self._apply_adaptation_rules(profile, event, now)
            self._run_pass("evolution metrics", self._update_metrics, profile, now)

            profile.last_updated = now
            await self._save_profile(profile)

        logger.info(
            f"Evolutionary profile updated for {redact_user_id(user_id)}: "
            f"type={event.type} success={event.success} adaptations={len(adaptations)}"
        )
        return {"profile": profile.to_dict(), "adaptations": [a.to_dict() for a in adaptations]}

    @staticmethod
    def _run_pass(name: str, learning_pass: Callable, *args):
        try:
            learning_pass(*args)
        except Exception:
            logger.exception(f"{name} failed")

    def _learn_preferences(self, profile: EvolutionaryProfile, event: InteractionEvent, now: datetime):
        preferences = profile.learned_preferences
        step = self.learning_models["preferences"]["learning_rate"]

        message = event.data.get("message")
        if isinstance(message, str) and message:
            formal, casual = self.formality_classifier.counts(message)
            if formal > casual:
                preferences.formality_level = clamp(preferences.formality_level + step)
                preferences.communication_style = "formal"
            elif casual > formal:
                preferences.formality_level = clamp(preferences.formality_level - step)
                preferences.communication_style = "casual"

            for interest in self.interest_classifier.all_labels(message):
                if interest not in preferences.topic_interests:
                    preferences.topic_interests.append(interest)

        preferences.time_preferences[now.hour] = preferences.time_preferences.get(now.hour, 0) + 1

        command = event.data.get("command")
        if event.type == "command" and command:
            preferences.interaction_patterns[command] = preferences.interaction_patterns.get(command, 0) + 1

    def _learn_behavior(self, profile: EvolutionaryProfile, event: InteractionEvent, now: datetime):
        behavior = profile.learned_behavior

        command = event.data.get("command")
        if event.type == "command" and command:
            behavior.command_usage[command] = behavior.command_usage.get(command, 0) + 1

        response_time = event.data.get("response_time")
        if isinstance(response_time, (int, float)) and response_time >= 0:
            if behavior.response_time is None:
                behavior.response_time = float(response_time)
            else:
                behavior.response_time = (behavior.response_time + response_time) / 2

        if event.success:
            behavior.success_patterns.append({
                "timestamp": to_iso(now),
                "type": event.type,
                "context": event.data.get("context")
            })
        else:
            behavior.error_patterns.append({
                "timestamp": to_iso(now),
                "type": event.type,
                "error": event.data.get("error"),
                "context": event.data.get("context")
            })

        if profile.total_interactions > 0:
            behavior.adaptation_level = clamp(profile.successful_interactions / profile.total_interactions)

    def _learn_context(self, profile: EvolutionaryProfile, event: InteractionEvent, now: datetime):
        context = profile.learned_context

        topic = event.data.get("topic")
        if isinstance(topic, str) and topic:
            if topic not in context.conversation_topics:
                context.conversation_topics.append(topic)
            profile.recent_topics.append(topic)

        session_length = event.data.get("session_length")
        if isinstance(session_length, (int, float)) and session_length >= 0:
            if context.session_length is None:
                context.session_length = float(session_length)
            else:
                context.session_length = (context.session_length + session_length) / 2

        minutes_since_last = (now - profile.last_updated).total_seconds() / 60
        if minutes_since_last < FREQUENCY_WINDOW_MINUTES:
            context.interaction_frequency += 1
        else:
            context.interaction_frequency = max(0, context.interaction_frequency - 1)

        if event.data.get("context_switch"):
            context.context_switches += 1

    def _apply_adaptation_rules(self, profile: EvolutionaryProfile, event: InteractionEvent,
                                now: datetime) -> List[Adaptation]:
        fired = []
        for rule_type, rules in self.adaptation_rules.items():
            for rule in rules:
                try:
                    if not rule.check(profile, event):
                        continue
                except Exception:
                    logger.exception(f"Adaptation rule {rule.condition} failed")
                    continue
                fired.append(Adaptation(
                    type=rule_type,
                    rule=rule.condition,
                    action=rule.action,
                    weight=rule.weight,
                    timestamp=now
                ))

        profile.applied_adaptations.extend(fired)
        return fired

    def _update_metrics(self, profile: EvolutionaryProfile, now: datetime):
        metrics = profile.evolution_metrics

        if profile.total_interactions > 0:
            metrics.learning_rate = clamp(profile.successful_interactions / profile.total_interactions)

        window_start = now - timedelta(days=ADAPTATION_WINDOW_DAYS)
        recent = sum(1 for adaptation in profile.applied_adaptations if adaptation.timestamp > window_start)
        metrics.adaptation_score = clamp(recent / ADAPTATION_WINDOW_DAYS)

        # Self-referential: derived from the prediction's own confidence, not measured accuracy
        predictions = profile.predictions
        if predictions.next_command and predictions.confidence > 0:
            metrics.prediction_accuracy = clamp(min(0.9, predictions.confidence * 0.8))

        with_feedback = [record for record in profile.interaction_history if record.feedback is not None]
        with_feedback = with_feedback[-SATISFACTION_WINDOW:]
        if with_feedback:
            positive = sum(1 for record in with_feedback if record.feedback > 0)
            metrics.user_satisfaction = clamp(positive / len(with_feedback))

        metrics.evolution_stage = stage_for(profile.total_interactions)

    # ------------------------------------------------------------------
    # Predictions and suggestions

    async def generate_predictions(self, user_id: str) -> Dict[str, Any]:
        """Frequency-heuristic guess at the next command, topic and active hour"""
        user_id = require_user_id(user_id)
        async with self.locks.hold(user_id):
            profile = await self._load_profile(user_id)
            if profile is None:
                return Predictions().to_dict()

            try:
                predictions = self._predict(profile)
            except Exception:
                logger.exception(f"Prediction failed for {redact_user_id(user_id)}")
                return Predictions().to_dict()

            profile.predictions = predictions
            await self._save_profile(profile)
            return predictions.to_dict()

    @staticmethod
    def _predict(profile: EvolutionaryProfile) -> Predictions:
        predictions = Predictions()
        confidence = 0.0

        usage = profile.learned_behavior.command_usage
        if usage:
            # max() keeps the first command seen on ties
            predictions.next_command = max(usage, key=usage.get)
            confidence += 0.3

        recent_topics = profile.recent_topics.to_list()
        if recent_topics:
            counts = Counter(recent_topics)
            # Newest first, so ties resolve to the most recent topic
            predictions.next_topic = max(reversed(recent_topics), key=counts.get)
            confidence += 0.3

        hours = profile.learned_preferences.time_preferences
        if hours:
            predictions.next_time = int(max(hours, key=hours.get))
            confidence += 0.2

        predictions.confidence = clamp(round(confidence, 4))
        return predictions

    async def get_personalized_suggestions(self, user_id: str) -> List[Dict[str, Any]]:
        """Top suggestions ranked by priority, then confidence"""
        user_id = require_user_id(user_id)
        profile = await self._load_profile(user_id)
        if profile is None:
            return []

        try:
            suggestions = self._candidate_suggestions(profile, self.clock())
        except Exception:
            logger.exception(f"Suggestion ranking failed for {redact_user_id(user_id)}")
            return []

        suggestions.sort(key=lambda s: (PRIORITY_ORDER[s["priority"]], s["confidence"]), reverse=True)
        return suggestions[:SUGGESTION_LIMIT]

    @staticmethod
    def _candidate_suggestions(profile: EvolutionaryProfile, now: datetime) -> List[Dict[str, Any]]:
        suggestions = []
        interests = profile.learned_preferences.topic_interests

        if "nutrition" in interests:
            suggestions.append({
                "type": "nutrition",
                "content": "Want to analyze a food or build a meal plan?",
                "priority": "high",
                "confidence": 0.8
            })
        if "exercise" in interests:
            suggestions.append({
                "type": "exercise",
                "content": "I can help with exercise tips or a training plan.",
                "priority": "high",
                "confidence": 0.8
            })

        usage = profile.learned_behavior.command_usage
        if sum(usage.get(command, 0) for command in REMINDER_COMMANDS) > REMINDER_USAGE_THRESHOLD:
            suggestions.append({
                "type": "productivity",
                "content": "How about setting a reminder for today?",
                "priority": "medium",
                "confidence": 0.7
            })

        hour = now.hour
        if 6 <= hour <= 9 and profile.learned_preferences.time_preferences.get(hour, 0) > 0:
            suggestions.append({
                "type": "morning",
                "content": "Good morning! Want to review today's agenda?",
                "priority": "high",
                "confidence": 0.9
            })
        elif 18 <= hour <= 22:
            suggestions.append({
                "type": "evening",
                "content": "Good evening! Want a quick recap of your day?",
                "priority": "medium",
                "confidence": 0.7
            })

        stage = profile.evolution_metrics.evolution_stage
        if stage == "expert":
            suggestions.append({
                "type": "advanced",
                "content": "I can create personalized shortcuts for you!",
                "priority": "medium",
                "confidence": 0.6
            })
        elif stage == "beginner":
            suggestions.append({
                "type": "help",
                "content": "Type 'help' to see everything I can do.",
                "priority": "low",
                "confidence": 0.5
            })

        return suggestions

    # ------------------------------------------------------------------
    # Queries

    async def get_recent_adaptations(self, user_id: str) -> List[Dict[str, Any]]:
        user_id = require_user_id(user_id)
        profile = await self._load_profile(user_id)
        if profile is None:
            return []
        window_start = self.clock() - timedelta(days=ADAPTATION_WINDOW_DAYS)
        return [a.to_dict() for a in profile.applied_adaptations if a.timestamp > window_start]

    async def get_evolutionary_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        profile = await self._load_profile(user_id)
        return profile.to_dict() if profile else None

    def get_learned_preferences(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Read-only copy of the learned preferences held in memory"""
        profile = self.profiles.get(user_id)
        if profile is None:
            return None
        return profile.learned_preferences.to_dict()

    def get_evolutionary_stats(self) -> Dict[str, Any]:
        profiles = list(self.profiles.values())
        stages = {stage: 0 for stage in EVOLUTION_STAGES}
        for profile in profiles:
            stages[profile.evolution_metrics.evolution_stage] += 1

        count = len(profiles)
        return {
            "total_profiles": count,
            "learning_models": len(self.learning_models),
            "adaptation_rules": len(self.adaptation_rules),
            "evolution_stages": stages,
            "average_adaptation_score":
                sum(p.evolution_metrics.adaptation_score for p in profiles) / count if count else 0.0,
            "average_learning_rate":
                sum(p.evolution_metrics.learning_rate for p in profiles) / count if count else 0.0
        }

    # ------------------------------------------------------------------
    # Privacy hooks and retention

    async def set_learning_enabled(self, user_id: str, enabled: bool) -> bool:
        """Toggle learning; disabling also forgets what was learned"""
        async with self.locks.hold(user_id):
            profile = await self._load_profile(user_id, create=not enabled)
            if profile is None:
                return enabled
            if profile.learning_enabled != enabled:
                profile.learning_enabled = enabled
                if not enabled:
                    profile.reset_learning()
                await self._save_profile(profile)
                logger.info(f"Learning {'enabled' if enabled else 'disabled'} for {redact_user_id(user_id)}")
        return enabled

    async def apply_data_retention(self, user_id: str, retention_days: int) -> int:
        cutoff = self.clock() - timedelta(days=retention_days)
        async with self.locks.hold(user_id):
            profile = await self._load_profile(user_id)
            if profile is None:
                return 0
            removed = self._prune(profile, cutoff)
            await self._save_profile(profile)
        return removed

    async def cleanup_old_data(self, retention_days: Optional[int] = None) -> Dict[str, Any]:
        """Drop interaction records and adaptations older than the retention window"""
        days = self.retention_days if retention_days is None else retention_days
        cutoff = self.clock() - timedelta(days=days)
        processed = 0

        for user_id in list(self.profiles):
            async with self.locks.hold(user_id):
                profile = self.profiles.get(user_id)
                if profile is None:
                    continue
                self._prune(profile, cutoff)
                await self._save_profile(profile)
                processed += 1

        logger.info(f"Evolutionary cleanup processed {processed} profiles (cutoff {cutoff.isoformat()})")
        return {"profiles_processed": processed, "cutoff_date": cutoff.isoformat()}

    @staticmethod
    def _prune(profile: EvolutionaryProfile, cutoff: datetime) -> int:
        removed = profile.interaction_history.retain(lambda record: record.timestamp > cutoff)
        removed += profile.applied_adaptations.retain(lambda adaptation: adaptation.timestamp > cutoff)
        return removed

    async def delete_user(self, user_id: str) -> List[str]:
        async with self.locks.hold(user_id):
            self.profiles.pop(user_id, None)
            try:
                await self.store.delete(evolutionary_key(user_id))
            except Exception as e:
                logger.error(f"Failed to delete evolutionary profile for {redact_user_id(user_id)}: {e}")
                return []
        return [EVOLUTIONARY_KEY_PREFIX]

    # ------------------------------------------------------------------
    # Persistence

    async def _load_profile(self, user_id: str, create: bool = False) -> Optional[EvolutionaryProfile]:
        profile = self.profiles.get(user_id)
        if profile is not None:
            return profile

        try:
            raw = await self.store.get(evolutionary_key(user_id))
            if raw:
                profile = EvolutionaryProfile.from_dict(json.loads(raw))
        except Exception as e:
            logger.error(f"Failed to load evolutionary profile for {redact_user_id(user_id)}: {e}")
            profile = None

        # Keep the copy a concurrent caller installed while we awaited the store
        if user_id in self.profiles:
            return self.profiles[user_id]

        if profile is None and create:
            profile = EvolutionaryProfile.create(user_id, self.clock())
            logger.info(f"New evolutionary profile for {redact_user_id(user_id)}")

        if profile is not None:
            self.profiles[user_id] = profile
        return profile

    async def _save_profile(self, profile: EvolutionaryProfile):
        try:
            await self.store.set(
                evolutionary_key(profile.user_id),
                json.dumps(profile.to_dict()),
                self.profile_ttl_seconds
            )
        except Exception as e:
            logger.error(f"Failed to persist evolutionary profile for {redact_user_id(profile.user_id)}: {e}")
