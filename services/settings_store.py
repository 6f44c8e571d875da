"""
Settings Store
Typed key/value runtime settings backed by the system_config table.

Reads go through a per-process cache. A write invalidates its key again when the
writing transaction commits or rolls back, and reads of that key inside the
writing session skip the cache until then. invalidate() drops the whole cache
when another process changed settings.
"""

import json
import logging
import time
from typing import Any, Dict, Optional, Tuple
from sqlalchemy import event
from sqlalchemy.orm import Session
from config import Config
from models import SystemConfig, utcnow

logger = logging.getLogger(__name__)

_MISSING = object()

# session.info key: (store, key) pairs written but not yet committed
_PENDING_WRITES = "settings_store_pending_writes"


@event.listens_for(Session, "after_commit")
@event.listens_for(Session, "after_rollback")
def _invalidate_pending_writes(session: Session) -> None:
    for store, key in session.info.pop(_PENDING_WRITES, set()):
        store.invalidate(key)


class SettingsStore:
    """Explicit configuration store with typed accessors and cache invalidation"""

    # Well-known keys
    FRAUD_PROTECTION_ENABLED = "fraud_protection_enabled"

    def __init__(self, ttl_seconds: Optional[int] = None):
        self.ttl_seconds = Config.SETTINGS_CACHE_TTL if ttl_seconds is None else ttl_seconds
        self._cache: Dict[str, Tuple[Any, float]] = {}

    # ------------------------------------------------------------------ reads

    def get(self, session: Session, key: str, default: Any = None) -> Any:
        if (self, key) in session.info.get(_PENDING_WRITES, ()):
            row = session.get(SystemConfig, key)
            return default if row is None else self._decode(row.value, row.value_type)

        cached = self._cache.get(key)
        if cached is not None and (self.ttl_seconds <= 0 or time.monotonic() - cached[1] < self.ttl_seconds):
            value = cached[0]
            return default if value is _MISSING else value

        row = session.get(SystemConfig, key)
        value = _MISSING if row is None else self._decode(row.value, row.value_type)
        self._cache[key] = (value, time.monotonic())
        return default if value is _MISSING else value

    def get_bool(self, session: Session, key: str, default: bool = False) -> bool:
        return bool(self.get(session, key, default))

    def get_int(self, session: Session, key: str, default: int = 0) -> int:
        return int(self.get(session, key, default))

    def get_float(self, session: Session, key: str, default: float = 0.0) -> float:
        return float(self.get(session, key, default))

    def get_json(self, session: Session, key: str, default: Any = None) -> Any:
        return self.get(session, key, default)

    # ----------------------------------------------------------------- writes

    def set(self, session: Session, key: str, value: Any, value_type: Optional[str] = None,
            description: Optional[str] = None) -> SystemConfig:
        value_type = value_type or self._infer_type(value)
        row = session.get(SystemConfig, key)
        if row is None:
            row = SystemConfig(key=key)
            session.add(row)
        row.value = self._encode(value, value_type)
        row.value_type = value_type
        row.updated_at = utcnow()
        if description is not None:
            row.description = description
        session.flush()

        self._track_write(session, key)
        logger.info(f"⚙️ SETTING_UPDATED: {key}={row.value} ({value_type})")
        return row

    def delete(self, session: Session, key: str) -> bool:
        row = session.get(SystemConfig, key)
        if row is None:
            return False
        session.delete(row)
        session.flush()
        self._track_write(session, key)
        return True

    def _track_write(self, session: Session, key: str) -> None:
        self.invalidate(key)
        session.info.setdefault(_PENDING_WRITES, set()).add((self, key))

    def invalidate(self, key: Optional[str] = None) -> None:
        """Drop one cached key, or the whole cache when key is None"""
        if key is None:
            self._cache.clear()
        else:
            self._cache.pop(key, None)

    # ------------------------------------------------------------ conversion

    @staticmethod
    def _infer_type(value: Any) -> str:
        if isinstance(value, bool):
            return "bool"
        if isinstance(value, int):
            return "int"
        if isinstance(value, float):
            return "float"
        if isinstance(value, (dict, list)):
            return "json"
        return "string"

    @staticmethod
    def _encode(value: Any, value_type: str) -> str:
        if value_type == "bool":
            return "1" if value else "0"
        if value_type == "json":
            return json.dumps(value)
        return str(value)

    @staticmethod
    def _decode(raw: str, value_type: str) -> Any:
        if value_type == "bool":
            return raw.strip().lower() in ("1", "true", "yes", "on")
        if value_type == "int":
            return int(raw)
        if value_type == "float":
            return float(raw)
        if value_type == "json":
            return json.loads(raw)
        return raw


# Global instance
settings_store = SettingsStore()
