"""Payment Account Selection Configuration Manager"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
from sqlalchemy import select
from sqlalchemy.orm import Session
from models import PaymentSelectionConfig, SelectionStrategy

logger = logging.getLogger(__name__)

GLOBAL_CONFIG_NAME = "global"

# Columns save_config may set; the row key and timestamps are managed here
EDITABLE_CONFIG_FIELDS = frozenset(PaymentSelectionConfig.__table__.columns.keys()) - {
    "id", "name", "created_at", "updated_at",
}


@dataclass(frozen=True)
class SelectionSettings:
    """Detached, immutable copy of a PaymentSelectionConfig row"""
    name: str
    selection_strategy: str = SelectionStrategy.LEAST_USED.value
    strategy_config: Dict[str, Any] = field(default_factory=dict)
    enable_fallback: bool = True
    max_fallback_attempts: int = 3
    account_weights: Dict[str, int] = field(default_factory=dict)
    account_priorities: Dict[str, int] = field(default_factory=dict)
    exclude_failed_accounts: bool = True
    failed_account_cooldown_minutes: int = 30
    enable_load_balancing: bool = False
    max_account_load_percentage: float = 100.0

    @classmethod
    def from_row(cls, row: PaymentSelectionConfig) -> "SelectionSettings":
        return cls(
            name=row.name,
            selection_strategy=row.selection_strategy,
            strategy_config=dict(row.strategy_config or {}),
            enable_fallback=bool(row.enable_fallback),
            max_fallback_attempts=row.max_fallback_attempts if row.max_fallback_attempts is not None else 3,
            account_weights={str(k): v for k, v in (row.account_weights or {}).items()},
            account_priorities={str(k): v for k, v in (row.account_priorities or {}).items()},
            exclude_failed_accounts=bool(row.exclude_failed_accounts),
            failed_account_cooldown_minutes=row.failed_account_cooldown_minutes or 0,
            enable_load_balancing=bool(row.enable_load_balancing),
            max_account_load_percentage=float(row.max_account_load_percentage or 100.0),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "selection_strategy": self.selection_strategy,
            "enable_fallback": self.enable_fallback,
            "max_fallback_attempts": self.max_fallback_attempts,
            "exclude_failed_accounts": self.exclude_failed_accounts,
            "failed_account_cooldown_minutes": self.failed_account_cooldown_minutes,
            "enable_load_balancing": self.enable_load_balancing,
            "max_account_load_percentage": self.max_account_load_percentage,
        }


class PaymentConfigManager:
    """
    Caches selection configuration per gateway.
    Lookup order: active config named after the gateway, then the active 'global'
    config, then built-in defaults. Writes go through save_config(), which invalidates.
    """

    def __init__(self):
        self._config_cache: Dict[str, SelectionSettings] = {}

    def get_config(self, session: Session, gateway_name: str) -> SelectionSettings:
        cached = self._config_cache.get(gateway_name)
        if cached is not None:
            return cached

        settings = None
        for name in (gateway_name, GLOBAL_CONFIG_NAME):
            row = session.execute(
                select(PaymentSelectionConfig).where(
                    PaymentSelectionConfig.name == name,
                    PaymentSelectionConfig.is_active.is_(True),
                )
            ).scalar_one_or_none()
            if row is not None:
                settings = SelectionSettings.from_row(row)
                break

        if settings is None:
            logger.info(f"⚙️ SELECTION_CONFIG: no config for {gateway_name}, using defaults")
            settings = SelectionSettings(name=GLOBAL_CONFIG_NAME)

        self._config_cache[gateway_name] = settings
        return settings

    def save_config(self, session: Session, name: str, **values: Any) -> Dict[str, Any]:
        """Create or update a config row, then invalidate cached lookups"""
        strategy = values.get("selection_strategy")
        if strategy is not None and strategy not in {s.value for s in SelectionStrategy}:
            return {"success": False, "error": f"Unknown selection strategy '{strategy}'"}
        unknown = sorted(set(values) - EDITABLE_CONFIG_FIELDS)
        if unknown:
            return {"success": False, "error": f"Unknown config field(s): {', '.join(unknown)}"}

        row = session.execute(
            select(PaymentSelectionConfig).where(PaymentSelectionConfig.name == name)
        ).scalar_one_or_none()
        if row is None:
            row = PaymentSelectionConfig(name=name)
            session.add(row)
        for key, value in values.items():
            setattr(row, key, value)
        session.flush()

        # The global row feeds every gateway without its own config
        self.invalidate(None if name == GLOBAL_CONFIG_NAME else name)
        logger.info(f"⚙️ SELECTION_CONFIG_SAVED: {name} {values}")
        return {"success": True, "name": name}

    def invalidate(self, gateway_name: Optional[str] = None) -> None:
        if gateway_name is None:
            self._config_cache.clear()
        else:
            self._config_cache.pop(gateway_name, None)


# Global instance
payment_config_manager = PaymentConfigManager()
