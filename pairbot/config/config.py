"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from typing import Optional

from dotenv import load_dotenv

log = logging.getLogger("pairbot")


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None or val == "":
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return int(raw)


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return float(raw)


def _str_env(key: str, default: Optional[str]) -> Optional[str]:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return raw


@dataclass(frozen=True)
class Settings:
    symbol: str = "XAUUSDm"
    broker: str = "paper"

    # Sizing
    fixed_lot: float = 0.02          # total lot per pair, split across two legs
    min_lot: float = 0.01
    max_per_category: int = 1

    # Entry / LEG2
    leg2_confirm_ms: int = 3_000     # wait for a broker mirror before placing LEG2 ourselves
    leg2_match_window_ms: int = 4_000
    lot_tolerance: float = 1e-4
    entry_timeout_ms: int = 20_000
    entry_lock_timeout_ms: int = 30_000

    # Reconciliation
    recent_ticket_ttl_ms: int = 15_000
    external_min_age_ms: int = 3_000
    close_unknown_age: bool = True   # positions with no open time are treated as old
    sync_grace_ms: int = 5_000
    leg2_grace_ms: int = 5_000
    missing_confirmations: int = 3   # consecutive listings a leg must be absent from

    # Tick logic
    min_trade_age_ms: int = 5_000
    partial_ratio: float = 0.5
    tight_partial_ratio: float = 0.3
    trailing_mode: str = "static"    # static | step
    trail_trigger_distance: float = 20.0
    trail_step_distance: float = 10.0
    freeze_tick_threshold: int = 60

    # SL/TP geometry (price units of the symbol)
    fallback_sl_distance: float = 4.0
    fallback_tp_distance: float = 8.0
    max_sl_distance: float = 8.0
    max_tp_distance: float = 30.0
    atr_trigger_multiplier: float = 1.5
    tp_reward_ratio: float = 2.0

    # Scheduling
    tick_interval_sec: float = 2.0
    reconcile_interval_sec: float = 3.0
    reconcile_on_tick: bool = True
    signal_ttl_ms: int = 24 * 3600 * 1000

    # Notifications
    notify_enabled: bool = True
    notify_webhook_url: Optional[str] = None
    notify_webhook_type: str = "generic"  # generic | telegram
    telegram_chat_id: Optional[str] = None
    notify_timeout_sec: float = 5.0

    # Observability
    metrics_port: int = 0
    log_file: Optional[str] = None
    log_json: bool = False

    def dump(self) -> dict:
        """Return a dict of settings for sanity checks/logging."""
        return asdict(self)

    @classmethod
    def load(cls) -> "Settings":
        load_dotenv()
        cfg = cls(
            symbol=os.getenv("PB_SYMBOL", cls.symbol),
            broker=os.getenv("PB_BROKER", cls.broker),
            fixed_lot=_float_env("PB_FIXED_LOT", cls.fixed_lot),
            min_lot=_float_env("PB_MIN_LOT", cls.min_lot),
            max_per_category=_int_env("PB_MAX_PER_CATEGORY", cls.max_per_category),
            leg2_confirm_ms=_int_env("PB_LEG2_CONFIRM_MS", cls.leg2_confirm_ms),
            leg2_match_window_ms=_int_env("PB_LEG2_MATCH_WINDOW_MS", cls.leg2_match_window_ms),
            lot_tolerance=_float_env("PB_LOT_TOLERANCE", cls.lot_tolerance),
            entry_timeout_ms=_int_env("PB_ENTRY_TIMEOUT_MS", cls.entry_timeout_ms),
            entry_lock_timeout_ms=_int_env("PB_ENTRY_LOCK_TIMEOUT_MS", cls.entry_lock_timeout_ms),
            recent_ticket_ttl_ms=_int_env("PB_RECENT_TICKET_TTL_MS", cls.recent_ticket_ttl_ms),
            external_min_age_ms=_int_env("PB_EXTERNAL_MIN_AGE_MS", cls.external_min_age_ms),
            close_unknown_age=env_bool("PB_CLOSE_UNKNOWN_AGE", cls.close_unknown_age),
            sync_grace_ms=_int_env("PB_SYNC_GRACE_MS", cls.sync_grace_ms),
            leg2_grace_ms=_int_env("PB_LEG2_GRACE_MS", cls.leg2_grace_ms),
            missing_confirmations=_int_env("PB_MISSING_CONFIRMATIONS", cls.missing_confirmations),
            min_trade_age_ms=_int_env("PB_MIN_TRADE_AGE_MS", cls.min_trade_age_ms),
            partial_ratio=_float_env("PB_PARTIAL_RATIO", cls.partial_ratio),
            tight_partial_ratio=_float_env("PB_TIGHT_PARTIAL_RATIO", cls.tight_partial_ratio),
            trailing_mode=os.getenv("PB_TRAILING_MODE", cls.trailing_mode).lower(),
            trail_trigger_distance=_float_env("PB_TRAIL_TRIGGER", cls.trail_trigger_distance),
            trail_step_distance=_float_env("PB_TRAIL_STEP", cls.trail_step_distance),
            freeze_tick_threshold=_int_env("PB_FREEZE_TICKS", cls.freeze_tick_threshold),
            fallback_sl_distance=_float_env("PB_FALLBACK_SL_DISTANCE", cls.fallback_sl_distance),
            fallback_tp_distance=_float_env("PB_FALLBACK_TP_DISTANCE", cls.fallback_tp_distance),
            max_sl_distance=_float_env("PB_MAX_SL_DISTANCE", cls.max_sl_distance),
            max_tp_distance=_float_env("PB_MAX_TP_DISTANCE", cls.max_tp_distance),
            atr_trigger_multiplier=_float_env("PB_ATR_TRIGGER_MULTIPLIER", cls.atr_trigger_multiplier),
            tp_reward_ratio=_float_env("PB_TP_REWARD_RATIO", cls.tp_reward_ratio),
            tick_interval_sec=_float_env("PB_TICK_INTERVAL_SEC", cls.tick_interval_sec),
            reconcile_interval_sec=_float_env("PB_RECONCILE_INTERVAL_SEC", cls.reconcile_interval_sec),
            reconcile_on_tick=env_bool("PB_RECONCILE_ON_TICK", cls.reconcile_on_tick),
            signal_ttl_ms=_int_env("PB_SIGNAL_TTL_MS", cls.signal_ttl_ms),
            notify_enabled=env_bool("PB_NOTIFY_ENABLED", cls.notify_enabled),
            notify_webhook_url=_str_env("PB_NOTIFY_WEBHOOK_URL", cls.notify_webhook_url),
            notify_webhook_type=os.getenv("PB_NOTIFY_WEBHOOK_TYPE", cls.notify_webhook_type).lower(),
            telegram_chat_id=_str_env("PB_TELEGRAM_CHAT_ID", cls.telegram_chat_id),
            notify_timeout_sec=_float_env("PB_NOTIFY_TIMEOUT_SEC", cls.notify_timeout_sec),
            metrics_port=_int_env("PB_METRICS_PORT", cls.metrics_port),
            log_file=_str_env("PB_LOG_FILE", cls.log_file),
            log_json=env_bool("PB_LOG_JSON", cls.log_json),
        )
        cfg._validate()
        _sanity_check(cfg)
        return cfg

    def _validate(self) -> None:
        if not self.symbol:
            raise ValueError("PB_SYMBOL must be set")
        if self.fixed_lot <= 0 or self.min_lot <= 0:
            raise ValueError("PB_FIXED_LOT and PB_MIN_LOT must be > 0")
        if self.max_per_category < 1:
            raise ValueError("PB_MAX_PER_CATEGORY must be >= 1")
        if self.missing_confirmations < 1:
            raise ValueError("PB_MISSING_CONFIRMATIONS must be >= 1")
        if not 0 < self.partial_ratio < 1:
            raise ValueError("PB_PARTIAL_RATIO must be in (0, 1)")
        if not 0 < self.tight_partial_ratio < 1:
            raise ValueError("PB_TIGHT_PARTIAL_RATIO must be in (0, 1)")
        if self.trailing_mode not in {"static", "step"}:
            raise ValueError("PB_TRAILING_MODE must be 'static' or 'step'")
        if self.trailing_mode == "step" and (self.trail_step_distance <= 0 or self.trail_trigger_distance <= 0):
            raise ValueError("PB_TRAIL_TRIGGER and PB_TRAIL_STEP must be > 0 in step mode")
        if self.entry_timeout_ms <= self.leg2_confirm_ms:
            raise ValueError("PB_ENTRY_TIMEOUT_MS must exceed PB_LEG2_CONFIRM_MS")
        if self.tick_interval_sec <= 0 or self.reconcile_interval_sec <= 0:
            raise ValueError("Loop intervals must be > 0")
        if self.notify_webhook_type not in {"generic", "telegram"}:
            raise ValueError("PB_NOTIFY_WEBHOOK_TYPE must be 'generic' or 'telegram'")
        if self.notify_webhook_type == "telegram" and self.notify_webhook_url and not self.telegram_chat_id:
            raise ValueError("PB_TELEGRAM_CHAT_ID is required for telegram notifications")

        if self.fixed_lot / 2 < self.min_lot:
            log.warning(
                "WARNING: PB_FIXED_LOT=%s splits below PB_MIN_LOT=%s; every entry will be rejected.",
                self.fixed_lot, self.min_lot,
            )
        if self.entry_lock_timeout_ms < self.entry_timeout_ms:
            log.warning(
                "WARNING: PB_ENTRY_LOCK_TIMEOUT_MS (%s) < PB_ENTRY_TIMEOUT_MS (%s); "
                "the lock may auto-release while an entry is still being confirmed.",
                self.entry_lock_timeout_ms, self.entry_timeout_ms,
            )
        if not self.close_unknown_age:
            log.warning("WARNING: PB_CLOSE_UNKNOWN_AGE=0; positions without open time are never swept.")


def _sanity_check(cfg: Settings) -> None:
    """Log critical settings once at startup so overrides are obvious."""
    payload = {
        "event": "config_loaded",
        "symbol": cfg.symbol,
        "broker": cfg.broker,
        "fixed_lot": cfg.fixed_lot,
        "leg2_confirm_ms": cfg.leg2_confirm_ms,
        "entry_timeout_ms": cfg.entry_timeout_ms,
        "trailing_mode": cfg.trailing_mode,
        "notify": bool(cfg.notify_webhook_url),
    }
    log.info(json.dumps(payload))

