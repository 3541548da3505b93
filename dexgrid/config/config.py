"""
Environment-driven runtime settings with validation.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from dexgrid.core.json_utils import dumps

load_dotenv()

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


@dataclass(frozen=True)
class Settings:
    account: Optional[str]
    bot_name: Optional[str]
    profiles_path: str
    state_dir: str
    log_level: str
    log_file: Optional[str]
    poll_interval: float
    fetch_interval_min: float  # balance refresh cadence, 0 disables
    metrics_enabled: bool
    metrics_port: int
    dry_run: bool

    def dump(self) -> dict:
        """Return a dict of settings for sanity checks/logging."""
        return self.__dict__.copy()

    @property
    def log_level_value(self) -> int:
        return getattr(logging, self.log_level)

    @classmethod
    def load(cls) -> "Settings":
        def _float_env(key: str, default: float) -> float:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            return float(raw)

        log_file = os.getenv("DEXGRID_LOG_FILE", "dexgrid.log")
        cfg = cls(
            account=os.getenv("DEXGRID_ACCOUNT") or None,
            bot_name=os.getenv("DEXGRID_BOT_NAME") or None,
            profiles_path=os.getenv("DEXGRID_PROFILES_PATH", "profiles/bots.yaml"),
            state_dir=os.getenv("DEXGRID_STATE_DIR", "state"),
            log_level=os.getenv("DEXGRID_LOG_LEVEL", "INFO").upper(),
            log_file=log_file or None,
            poll_interval=_float_env("DEXGRID_POLL_INTERVAL_SEC", 5.0),
            fetch_interval_min=_float_env("DEXGRID_FETCH_INTERVAL_MIN", 240.0),
            metrics_enabled=env_bool("DEXGRID_METRICS_ENABLED", True),
            metrics_port=int(_float_env("DEXGRID_METRICS_PORT", 9108)),
            dry_run=env_bool("DEXGRID_DRY_RUN", False),
        )
        cfg._validate()
        _sanity_check(cfg)
        return cfg

    def _validate(self) -> None:
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(f"DEXGRID_LOG_LEVEL must be one of {sorted(_LOG_LEVELS)}")
        if self.poll_interval <= 0:
            raise ValueError("DEXGRID_POLL_INTERVAL_SEC must be > 0")
        if self.fetch_interval_min < 0:
            raise ValueError("DEXGRID_FETCH_INTERVAL_MIN must be >= 0")
        if not (0 < self.metrics_port < 65536):
            raise ValueError("DEXGRID_METRICS_PORT must be a valid TCP port")
        if not self.account:
            logging.getLogger("gridbot").warning(
                "WARNING: DEXGRID_ACCOUNT not set. Balances cannot be fetched; "
                "percentage botFunds will resolve to 0 until totals are provided."
            )


def _sanity_check(cfg: Settings) -> None:
    """Log the effective settings once at startup so overrides are obvious."""
    payload = {
        "event": "config_loaded",
        "bot_name": cfg.bot_name,
        "state_dir": cfg.state_dir,
        "poll_interval": cfg.poll_interval,
        "dry_run": cfg.dry_run,
    }
    logging.getLogger("gridbot").info(dumps(payload))
