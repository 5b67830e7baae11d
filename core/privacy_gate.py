#!/usr/bin/env python3
"""
Privacy Gate
Privacy levels, consent history, opt-out, data export and wholesale
deletion across the Memory Store, Profile Evolver and Reference Resolver
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional, Callable, Set

from core.locks import KeyedLock
from core.memory_store import MemoryStore
from core.profile_evolver import ProfileEvolver
from core.reference_resolver import ReferenceResolver
from core.models import BoundedLog, from_iso, to_iso
from utils.config_loader import DAY_SECONDS
from utils.errors import ValidationError, require_user_id
from utils.kv_store import KeyValueStore
from utils.redis_logger import redact_user_id

logger = logging.getLogger(__name__)

PRIVACY_SETTINGS_PREFIX = "privacy_settings"
OPT_OUT_PREFIX = "opt_out"
CONSENT_HISTORY_PREFIX = "consent_history"
PRIVACY_RECORD_TTL = 365 * DAY_SECONDS
CONSENT_HISTORY_SIZE = 50

PRIVACY_LEVELS = {
    "low": {
        "name": "Low",
        "description": "Less privacy, more personalization",
        "data_retention": 90,
        "learning_enabled": True,
        "profile_sharing": True,
        "context_tracking": True,
        "behavior_analysis": True,
        "data_export": True,
        "data_deletion": "on_request"
    },
    "standard": {
        "name": "Standard",
        "description": "Balanced privacy",
        "data_retention": 30,
        "learning_enabled": True,
        "profile_sharing": False,
        "context_tracking": True,
        "behavior_analysis": True,
        "data_export": True,
        "data_deletion": "on_request"
    },
    "high": {
        "name": "High",
        "description": "Maximum privacy",
        "data_retention": 7,
        "learning_enabled": False,
        "profile_sharing": False,
        "context_tracking": False,
        "behavior_analysis": False,
        "data_export": False,
        "data_deletion": "automatic"
    }
}


def privacy_settings_key(user_id: str) -> str:
    return f"{PRIVACY_SETTINGS_PREFIX}:{user_id}"


def opt_out_key(user_id: str) -> str:
    return f"{OPT_OUT_PREFIX}:{user_id}"


def consent_history_key(user_id: str) -> str:
    return f"{CONSENT_HISTORY_PREFIX}:{user_id}"


class PrivacyGate:
    """Delete / export / opt-out wrapper over the three engine components"""

    def __init__(self,
                 store: KeyValueStore,
                 memory: MemoryStore,
                 evolver: ProfileEvolver,
                 resolver: ReferenceResolver,
                 locks: Optional[KeyedLock] = None,
                 clock: Callable[[], datetime] = datetime.now,
                 consent_retention_days: int = 30):
        self.store = store
        self.memory = memory
        self.evolver = evolver
        self.resolver = resolver
        self.locks = locks or KeyedLock()
        self.clock = clock
        self.consent_retention_days = consent_retention_days

        self.opted_out: Set[str] = set()
        self.user_levels: Dict[str, str] = {}
        self.consent_history: Dict[str, BoundedLog] = {}

    async def set_user_privacy(self, user_id: str, level: str,
                               custom_settings: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        user_id = require_user_id(user_id)
        if level not in PRIVACY_LEVELS:
            raise ValidationError(
                f"Unknown privacy level '{level}'",
                field="level",
                hint=f"Use one of: {', '.join(PRIVACY_LEVELS)}."
            )

        settings = {
            **PRIVACY_LEVELS[level],
            **(custom_settings or {}),
            "level": level,
            "set_at": to_iso(self.clock())
        }
        await self._write(privacy_settings_key(user_id), settings, user_id)
        await self._apply(user_id, settings)
        self.user_levels[user_id] = level
        await self.record_consent(user_id, "privacy_settings", {
            "level": level,
            "custom_settings": custom_settings or {}
        })

        logger.info(f"Privacy level '{level}' set for {redact_user_id(user_id)}")
        return settings

    async def _apply(self, user_id: str, settings: Dict[str, Any]):
        if not settings.get("context_tracking", True):
            await self.memory.clear_context(user_id)

        await self.evolver.set_learning_enabled(user_id, bool(settings.get("learning_enabled", True)))

        retention = settings.get("data_retention")
        if retention:
            await self.memory.apply_data_retention(user_id, int(retention))
            await self.evolver.apply_data_retention(user_id, int(retention))

        await self.memory.set_privacy_settings(user_id, {
            "privacy": settings["level"],
            "data_retention": retention,
            "learning_enabled": settings.get("learning_enabled", True),
            "profile_sharing": settings.get("profile_sharing", False)
        })

    async def get_user_privacy_settings(self, user_id: str) -> Dict[str, Any]:
        """Stored settings, or the standard level when none were chosen"""
        user_id = require_user_id(user_id)
        try:
            raw = await self.store.get(privacy_settings_key(user_id))
            if raw:
                return json.loads(raw)
        except Exception as e:
            logger.error(f"Failed to load privacy settings for {redact_user_id(user_id)}: {e}")
        return {**PRIVACY_LEVELS["standard"], "level": "standard"}

    # ------------------------------------------------------------------
    # Consent history

    async def record_consent(self, user_id: str, consent_type: str,
                             data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Append to the user's capped consent log and persist it"""
        user_id = require_user_id(user_id)
        data = dict(data or {})
        consent = {
            "type": consent_type,
            "data": data,
            "timestamp": to_iso(self.clock()),
            "ip_address": data.get("ip_address", "unknown"),
            "user_agent": data.get("user_agent", "unknown")
        }

        async with self.locks.hold(user_id):
            history = await self._load_consent_history(user_id)
            history.append(consent)
            await self._write(consent_history_key(user_id), history.to_list(), user_id)

        return dict(consent)

    async def get_consent_history(self, user_id: str) -> List[Dict[str, Any]]:
        user_id = require_user_id(user_id)
        history = await self._load_consent_history(user_id)
        return [dict(consent) for consent in history]

    async def _load_consent_history(self, user_id: str) -> BoundedLog:
        history = self.consent_history.get(user_id)
        if history is not None:
            return history

        items = []
        try:
            raw = await self.store.get(consent_history_key(user_id))
            if raw:
                items = json.loads(raw)
        except Exception as e:
            logger.error(f"Failed to load consent history for {redact_user_id(user_id)}: {e}")

        return self.consent_history.setdefault(user_id, BoundedLog(CONSENT_HISTORY_SIZE, items))

    async def cleanup_old_data(self, retention_days: Optional[int] = None) -> Dict[str, Any]:
        """Drop consent entries older than the retention window"""
        days = self.consent_retention_days if retention_days is None else retention_days
        cutoff = self.clock() - timedelta(days=days)
        cleaned = 0

        for user_id in list(self.consent_history):
            async with self.locks.hold(user_id):
                history = self.consent_history.get(user_id)
                if history is None:
                    continue
                if history.retain(lambda consent: from_iso(consent["timestamp"]) > cutoff):
                    await self._write(consent_history_key(user_id), history.to_list(), user_id)
                    cleaned += 1

        logger.info(f"Consent cleanup processed {cleaned} users (cutoff {cutoff.isoformat()})")
        return {"users_processed": cleaned, "cutoff_date": cutoff.isoformat()}

    # ------------------------------------------------------------------
    # Opt-out, deletion and export

    async def is_user_opted_out(self, user_id: str) -> bool:
        if user_id in self.opted_out:
            return True
        try:
            if await self.store.get(opt_out_key(user_id)):
                self.opted_out.add(user_id)
                return True
        except Exception as e:
            logger.error(f"Failed to check opt-out for {redact_user_id(user_id)}: {e}")
        return False

    async def process_opt_out(self, user_id: str, reason: str = "user_request") -> Dict[str, Any]:
        """Mark the user opted out, delete everything held about them, then log the opt-out"""
        user_id = require_user_id(user_id)
        self.opted_out.add(user_id)
        await self._write(opt_out_key(user_id), {"reason": reason, "timestamp": to_iso(self.clock())}, user_id)

        deletion = await self.delete_all_user_data(user_id)
        # Recorded after deletion so the opt-out itself stays on file
        await self.record_consent(user_id, "opt_out", {"reason": reason})

        logger.info(f"User {redact_user_id(user_id)} opted out ({reason})")
        return {"opted_out": True, "reason": reason, "deleted_data": deletion["deleted_data"]}

    async def delete_all_user_data(self, user_id: str) -> Dict[str, Any]:
        user_id = require_user_id(user_id)
        deleted: List[str] = []

        deleted.extend(await self.memory.delete_user(user_id))
        deleted.extend(await self.evolver.delete_user(user_id))
        if self.resolver.clear_action_history(user_id):
            deleted.append("action_history")

        self.user_levels.pop(user_id, None)
        async with self.locks.hold(user_id):
            self.consent_history.pop(user_id, None)
            for prefix, key in ((PRIVACY_SETTINGS_PREFIX, privacy_settings_key(user_id)),
                                (CONSENT_HISTORY_PREFIX, consent_history_key(user_id))):
                try:
                    await self.store.delete(key)
                    deleted.append(prefix)
                except Exception as e:
                    logger.error(f"Failed to delete {prefix} for {redact_user_id(user_id)}: {e}")

        logger.info(f"User data deleted for {redact_user_id(user_id)}: {deleted}")
        return {"deleted_data": deleted}

    async def export_user_data(self, user_id: str) -> Dict[str, Any]:
        user_id = require_user_id(user_id)
        notes = await self.memory.get_important_info(user_id)
        export = {
            "user_id": user_id,
            "export_date": to_iso(self.clock()),
            "data": {
                "context": await self.memory.get_current_context(user_id),
                "user_profile": await self.memory.get_user_profile(user_id),
                "evolutionary_profile": await self.evolver.get_evolutionary_profile(user_id),
                "privacy_settings": await self.get_user_privacy_settings(user_id),
                "consent_history": await self.get_consent_history(user_id),
                "important_info": notes["info"],
                "action_history": self.resolver.get_action_history(user_id)
            }
        }
        logger.info(f"User data exported for {redact_user_id(user_id)}")
        return export

    def get_privacy_stats(self) -> Dict[str, Any]:
        levels = {level: 0 for level in PRIVACY_LEVELS}
        for level in self.user_levels.values():
            levels[level] += 1
        levels["opt_out"] = len(self.opted_out)

        return {
            "total_users": len(self.user_levels),
            "opt_out_users": len(self.opted_out),
            "consent_histories": len(self.consent_history),
            "privacy_levels": levels
        }

    async def _write(self, key: str, payload: Any, user_id: str):
        try:
            await self.store.set(key, json.dumps(payload), PRIVACY_RECORD_TTL)
        except Exception as e:
            logger.error(f"Failed to persist {key.split(':', 1)[0]} for {redact_user_id(user_id)}: {e}")
