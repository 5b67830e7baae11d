#!/usr/bin/env python3
"""
Reference Resolver
Detects anaphoric and deictic expressions ("like I said", "the same amount",
"that restaurant", "do it again") in an inbound message and resolves them
against the Memory Store history and a per-user action log.
"Not found" is a normal outcome, reported with found=False.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Any, List, Optional, Callable, Awaitable, Union, Pattern

from core.memory_store import MemoryStore
from core.models import BoundedLog, Message, to_iso
from utils.errors import ValidationError, require_text, require_user_id
from utils.redis_logger import redact_user_id

logger = logging.getLogger(__name__)

ACTION_HISTORY_SIZE = 10
PREVIOUS_STATEMENT_WINDOW = 5
PREVIOUS_STATEMENT_MIN_LENGTH = 10
SUGGESTION_LIMIT = 3

ReplySender = Callable[[str, str], Awaitable[Any]]

DEFAULT_REFERENCE_PATTERNS = {
    "temporal": [
        (r"como eu disse|like i said|as i said", "previous_statement", 0.9),
        (r"antes eu falei|i mentioned before|i said before", "previous_statement", 0.9),
        (r"no in[ií]cio|at the (?:start|beginning)", "conversation_start", 0.8),
        (r"mais cedo|earlier today", "earlier_today", 0.7),
        (r"\bontem\b|\byesterday\b", "yesterday", 0.8),
        (r"na semana passada|last week", "last_week", 0.7),
    ],
    "spatial": [
        (r"aquele lugar|that place", "location", 0.8),
        (r"o restaurante|(?:that|the) restaurant", "restaurant", 0.9),
        (r"\ba loja\b|(?:that|the) (?:store|shop)", "store", 0.8),
        (r"o produto|(?:that|the) product", "product", 0.8),
        (r"o servi[cç]o|(?:that|the) service", "service", 0.8),
    ],
    "action": [
        (r"fa[cç]a de novo|do it again", "repeat_action", 0.9),
        (r"\brepita\b|repeat (?:that|it)", "repeat_action", 0.9),
        (r"execute novamente|run it again", "repeat_action", 0.8),
        (r"\brefa[cç]a\b|\bredo\b", "repeat_action", 0.8),
        (r"tente novamente|try again", "retry_action", 0.7),
    ],
    "person": [
        (r"ele disse|he said", "third_party_statement", 0.8),
        (r"ela mencionou|she mentioned", "third_party_statement", 0.8),
        (r"o m[eé]dico|(?:the|my) doctor", "doctor", 0.9),
        (r"o nutricionista|(?:the|my) nutritionist", "nutritionist", 0.9),
        (r"o personal|(?:the|my) (?:personal )?trainer", "trainer", 0.8),
    ],
    "quantity": [
        (r"a mesma quantidade|the same (?:amount|quantity)", "same_quantity", 0.8),
        (r"o mesmo valor|the same (?:value|price)", "same_value", 0.8),
        (r"como da [uú]ltima vez|like last time|same as last time", "last_time", 0.7),
        (r"igual ao anterior|same as before", "previous_equal", 0.7),
    ],
    "time": [
        (r"no mesmo hor[aá]rio|at the same time", "same_time", 0.8),
        (r"como sempre|as usual|as always", "usual_time", 0.7),
        (r"todo dia|every day|\bdaily\b", "daily", 0.8),
        (r"semanalmente|every week|\bweekly\b", "weekly", 0.8),
    ],
}

DEFAULT_CONTEXTUAL_MAPPINGS = {
    "restaurant": ["restaurante", "lanchonete", "café", "bar", "pizzaria", "hamburgueria",
                   "restaurant", "diner", "cafe", "pizzeria"],
    "store": ["loja", "mercado", "supermercado", "shopping", "store", "shop", "market"],
    "product": ["produto", "item", "mercadoria", "artigo", "product", "article"],
    "service": ["serviço", "atendimento", "suporte", "assistência", "service", "support"],
    "location": ["lugar", "local", "endereço", "endereco", "place", "address", "location"],
    "time": ["horário", "hora", "momento", "quando", "time", "hour", "when"],
}

ENTITY_TYPES = ("location", "restaurant", "store", "product", "service")
QUANTITY_TYPES = ("same_quantity", "same_value", "previous_equal")
TIME_TYPES = ("same_time", "usual_time")

QUANTITY_PATTERN = re.compile(
    r"\d+(?:[.,]\d+)?\s*(?:kg|mg|g|ml|l|gramas?|grams?|litros?|liters?|litres?|unidades?|units?|"
    r"porç(?:ão|ões)|porcao|porcoes|portions?|servings?|x[ií]caras?|cups?|reais|dollars?)(?!\w)"
    r"|(?:r\$|\$)\s*\d+",
    re.IGNORECASE
)
TIME_PATTERN = re.compile(
    r"\b\d{1,2}[:h]\d{2}\b|\b\d{1,2}\s*(?:am|pm)\b"
    r"|(?<!\w)(?:hora|horário|horario|manhã|manha|tarde|noite|morning|afternoon|evening|night|o'clock)",
    re.IGNORECASE
)
WORD_PATTERN = re.compile(r"\w+")

CONTEXTUAL_SUGGESTIONS = {
    "previous_statement": ["Want me to go into more detail on that?", "Should I explain that point further?"],
    "repeat_action": ["Want me to run the action again?", "Should I change any parameter?"],
    "entity_reference": ["Want more information about it?", "Can I help with something related?"],
    "quantity_reference": ["Want to adjust the quantity?", "Should I calculate the equivalent?"],
    "time_reference": ["Want to schedule it for that time?", "Should I create a reminder?"],
}

SECTION_TITLES = {
    "previous_statement": "Previous statement",
    "repeat_action": "Repeat action",
    "entity_reference": "Entity reference",
    "quantity_reference": "Quantity reference",
    "time_reference": "Time reference",
}


@dataclass
class ReferencePattern:
    pattern: Pattern
    type: str
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {"pattern": self.pattern.pattern, "type": self.type, "confidence": self.confidence}


@dataclass
class DetectedReference:
    category: str
    type: str
    confidence: float
    matched_text: str
    position: int


class ReferenceResolver:
    """Pattern-based reference detection and resolution"""

    def __init__(self,
                 memory: MemoryStore,
                 reply_sender: Optional[ReplySender] = None,
                 clock: Callable[[], datetime] = datetime.now,
                 action_history_size: int = ACTION_HISTORY_SIZE):
        self.memory = memory
        self.reply_sender = reply_sender
        self.clock = clock
        self.action_history_size = action_history_size

        self.reference_patterns: Dict[str, List[ReferencePattern]] = {}
        for category, patterns in DEFAULT_REFERENCE_PATTERNS.items():
            for pattern, ref_type, confidence in patterns:
                self.add_reference_pattern(category, pattern, ref_type, confidence)
        self.contextual_mappings: Dict[str, List[str]] = {
            entity: list(synonyms) for entity, synonyms in DEFAULT_CONTEXTUAL_MAPPINGS.items()
        }
        self.action_history: Dict[str, BoundedLog] = {}

        logger.info("Reference Resolver initialized")

    # ------------------------------------------------------------------
    # Detection

    def detect_references(self, message: str) -> List[DetectedReference]:
        """All pattern matches, by confidence (desc) then position in the message (asc)"""
        lowered = (message or "").lower()
        detected = []
        for category, patterns in self.reference_patterns.items():
            for reference_pattern in patterns:
                match = reference_pattern.pattern.search(lowered)
                if match:
                    detected.append(DetectedReference(
                        category=category,
                        type=reference_pattern.type,
                        confidence=reference_pattern.confidence,
                        matched_text=match.group(0),
                        position=match.start()
                    ))
        detected.sort(key=lambda ref: (-ref.confidence, ref.position))
        return detected

    def has_references(self, message: str) -> bool:
        return bool(self.detect_references(message))

    # ------------------------------------------------------------------
    # Resolution

    async def process_smart_references(self, user_id: str, message: str) -> Dict[str, Any]:
        """Detect, resolve, compose a reply and dispatch it when a sender is configured"""
        user_id = require_user_id(user_id)
        message = require_text(message, "message", "Send the text to look for references in.")

        try:
            detected = self.detect_references(message)
            if not detected:
                return {"has_references": False}

            history = await self.memory.get_messages(user_id, include_long_term=True)
            recent = await self.memory.get_messages(user_id)
            history = self._without_inbound(history, message)
            recent = self._without_inbound(recent, message)

            resolved = []
            for reference in detected:
                try:
                    resolved.append(self._resolve(user_id, reference, history, recent))
                except Exception:
                    logger.exception(f"Resolving {reference.type} failed for {redact_user_id(user_id)}")

            if not resolved:
                return {"has_references": False}

            suggestions = self.generate_contextual_suggestions(resolved)
            response = self.compose_response(resolved, suggestions)

        except Exception:
            logger.exception(f"Smart reference processing failed for {redact_user_id(user_id)}")
            return {"has_references": False}

        await self._dispatch(user_id, response)
        return {
            "has_references": True,
            "references": resolved,
            "suggestions": suggestions,
            "response": response
        }

    @staticmethod
    def _without_inbound(messages: List[Message], inbound: str) -> List[Message]:
        if messages and messages[-1].content == inbound:
            return messages[:-1]
        return messages

    def _resolve(self, user_id: str, reference: DetectedReference,
                 history: List[Message], recent: List[Message]) -> Dict[str, Any]:
        if reference.type == "previous_statement":
            result = self._resolve_previous_statement(recent)
        elif reference.type == "repeat_action":
            result = self._resolve_repeat_action(user_id)
        elif reference.type in ENTITY_TYPES:
            result = self._resolve_entity(reference.type, history)
        elif reference.type in QUANTITY_TYPES:
            result = self._latest_match(
                history, lambda content: bool(QUANTITY_PATTERN.search(content)),
                "quantity_reference", "You mean the quantity: \"{}\"",
                "I could not find any quantity mentioned before."
            )
        elif reference.type in TIME_TYPES:
            result = self._latest_match(
                history, lambda content: bool(TIME_PATTERN.search(content)),
                "time_reference", "You mean the time: \"{}\"",
                "I could not find any time mentioned before."
            )
        else:
            words = [word for word in WORD_PATTERN.findall(reference.matched_text) if len(word) > 2]
            result = self._latest_match(
                history, lambda content: any(word in content for word in words),
                "generic_reference", "You mean: \"{}\"",
                "I could not find anything related."
            )

        result.update({
            "category": reference.category,
            "reference_type": reference.type,
            "confidence": reference.confidence,
            "matched_text": reference.matched_text
        })
        return result

    def _resolve_previous_statement(self, recent: List[Message]) -> Dict[str, Any]:
        relevant = [m for m in recent if len(m.content) > PREVIOUS_STATEMENT_MIN_LENGTH]
        relevant = relevant[-PREVIOUS_STATEMENT_WINDOW:]
        if not relevant:
            return {
                "type": "previous_statement",
                "found": False,
                "message": "I could not find an earlier statement to refer to."
            }
        last = relevant[-1]
        return {
            "type": "previous_statement",
            "found": True,
            "message": f"You mean: \"{last.content}\"",
            "resolved_content": last.content,
            "timestamp": to_iso(last.timestamp)
        }

    def _resolve_repeat_action(self, user_id: str) -> Dict[str, Any]:
        history = self.action_history.get(user_id)
        if not history:
            return {
                "type": "repeat_action",
                "found": False,
                "message": "I could not find a previous action to repeat."
            }
        last = history[-1]
        return {
            "type": "repeat_action",
            "found": True,
            "message": f"Repeating: {last['description']}",
            "resolved_content": last["description"],
            "action": last["action"],
            "parameters": last["parameters"],
            "timestamp": last["timestamp"]
        }

    def _resolve_entity(self, entity_type: str, history: List[Message]) -> Dict[str, Any]:
        synonyms = [synonym.lower() for synonym in self.contextual_mappings.get(entity_type, [])]
        result = self._latest_match(
            history, lambda content: any(synonym in content for synonym in synonyms),
            "entity_reference", "You mean: \"{}\"",
            f"I could not find an earlier mention of a {entity_type}."
        )
        result["entity_type"] = entity_type
        return result

    @staticmethod
    def _latest_match(history: List[Message], predicate: Callable[[str], bool], result_type: str,
                      found_template: str, not_found_message: str) -> Dict[str, Any]:
        for message in reversed(history):
            if predicate(message.content.lower()):
                return {
                    "type": result_type,
                    "found": True,
                    "message": found_template.format(message.content),
                    "resolved_content": message.content,
                    "timestamp": to_iso(message.timestamp)
                }
        return {"type": result_type, "found": False, "message": not_found_message}

    # ------------------------------------------------------------------
    # Reply composition

    def generate_contextual_suggestions(self, resolved: List[Dict[str, Any]]) -> List[str]:
        suggestions = []
        for reference in resolved:
            suggestions.extend(CONTEXTUAL_SUGGESTIONS.get(reference["type"], []))
        return suggestions[:SUGGESTION_LIMIT]

    @staticmethod
    def compose_response(resolved: List[Dict[str, Any]], suggestions: List[str]) -> str:
        lines = ["*Smart reference detected*", ""]

        seen = set()
        for reference in resolved:
            # One section per resolution type, from its best-ranked reference
            if reference["type"] in seen:
                continue
            seen.add(reference["type"])

            lines.append(f"*{SECTION_TITLES.get(reference['type'], 'Related reference')}:*")
            lines.append(reference["message"])
            if reference.get("action"):
                lines.append(f"*Action:* {reference['action']}")
                parameters = reference.get("parameters")
                if parameters:
                    if isinstance(parameters, (list, tuple)):
                        parameters = ", ".join(str(p) for p in parameters)
                    lines.append(f"*Parameters:* {parameters}")
            lines.append("")

        if suggestions:
            lines.append("*Suggestions:*")
            lines.extend(f"• {suggestion}" for suggestion in suggestions)
            lines.append("")

        lines.append("*Carry on with the conversation!*")
        return "\n".join(lines)

    async def _dispatch(self, user_id: str, response: str):
        if self.reply_sender is None:
            return
        try:
            await self.reply_sender(user_id, response)
        except Exception as e:
            logger.error(f"Reply dispatch failed for {redact_user_id(user_id)}: {e}")

    # ------------------------------------------------------------------
    # Action log

    def record_action(self, user_id: str, action: str, parameters: Any = None,
                      description: Optional[str] = None) -> Dict[str, Any]:
        user_id = require_user_id(user_id)
        action = require_text(action, "action", "Name the action that was executed.")

        record = {
            "action": action,
            "parameters": parameters,
            "description": description or action,
            "timestamp": to_iso(self.clock())
        }
        history = self.action_history.get(user_id)
        if history is None:
            history = BoundedLog(self.action_history_size)
            self.action_history[user_id] = history
        history.append(record)
        return dict(record)

    def get_action_history(self, user_id: str) -> List[Dict[str, Any]]:
        history = self.action_history.get(user_id)
        return [dict(record) for record in history] if history else []

    def clear_action_history(self, user_id: str) -> bool:
        return self.action_history.pop(user_id, None) is not None

    # ------------------------------------------------------------------
    # Extension points and stats

    def add_reference_pattern(self, category: str, pattern: Union[str, Pattern], ref_type: str,
                              confidence: float = 0.8):
        if not 0 <= confidence <= 1:
            raise ValidationError("Confidence must be within [0, 1]", field="confidence",
                                  hint="Use a value between 0 and 1.")
        compiled = re.compile(pattern, re.IGNORECASE) if isinstance(pattern, str) else pattern
        self.reference_patterns.setdefault(category, []).append(
            ReferencePattern(pattern=compiled, type=ref_type, confidence=confidence)
        )

    def add_contextual_mapping(self, entity_type: str, synonyms: List[str]):
        self.contextual_mappings[entity_type] = list(synonyms)

    def get_all_reference_patterns(self) -> List[Dict[str, Any]]:
        return [
            {"category": category, "patterns": [p.to_dict() for p in patterns]}
            for category, patterns in self.reference_patterns.items()
        ]

    def get_all_contextual_mappings(self) -> List[Dict[str, Any]]:
        return [
            {"entity_type": entity_type, "synonyms": list(synonyms)}
            for entity_type, synonyms in self.contextual_mappings.items()
        ]

    def get_reference_stats(self) -> Dict[str, Any]:
        return {
            "total_patterns": sum(len(patterns) for patterns in self.reference_patterns.values()),
            "active_users": len(self.action_history),
            "total_actions": sum(len(history) for history in self.action_history.values())
        }
