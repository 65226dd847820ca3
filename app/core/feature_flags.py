"""
Kill switches for the trial lifecycle service.

An incident (say a bad deploy that would suspend schools early) can stop
the daily run, the manual trigger or operator alerts by environment
variable, without a code change. Every flag defaults to enabled; a
disabled feature logs and skips, it never raises.
"""

import logging
import os
from dataclasses import asdict, dataclass
from typing import Dict, Optional

logger = logging.getLogger(__name__)

# Field -> unprefixed env var (flags are shared across PROD/STAGE/LOCAL tooling)
FLAG_ENV_VARS = {
    "background_workers_enabled": "FEATURE_BACKGROUND_WORKERS_ENABLED",
    "manual_trial_check_enabled": "FEATURE_MANUAL_TRIAL_CHECK_ENABLED",
    "operator_alerts_enabled": "FEATURE_OPERATOR_ALERTS_ENABLED",
}

_TRUE = ("true", "1", "yes", "on")
_FALSE = ("false", "0", "no", "off")


@dataclass(frozen=True)
class FeatureFlags:
    background_workers_enabled: bool = True   # scheduled daily run
    manual_trial_check_enabled: bool = True   # POST /admin/trials/check
    operator_alerts_enabled: bool = True      # Telegram run/suspension alerts

    def as_dict(self) -> Dict[str, bool]:
        return asdict(self)


_feature_flags: Optional[FeatureFlags] = None


def _parse_bool_env(key: str, default: bool = True) -> bool:
    raw = os.getenv(key)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    logger.warning(f"[FEATURE_FLAGS] {key}={raw!r} is not a boolean, using default {default}")
    return default


def get_feature_flags() -> FeatureFlags:
    """Flags read once from the environment, then cached."""
    global _feature_flags

    if _feature_flags is None:
        _feature_flags = FeatureFlags(**{
            field: _parse_bool_env(env_var, default=True) for field, env_var in FLAG_ENV_VARS.items()
        })
        disabled = [name for name, enabled in _feature_flags.as_dict().items() if not enabled]
        if disabled:
            logger.warning(f"[FEATURE_FLAGS] Disabled: {', '.join(disabled)}")
        else:
            logger.info("[FEATURE_FLAGS] All features enabled")

    return _feature_flags


def reset_feature_flags() -> None:
    """Drop the cached flags so the next call re-reads the environment (for testing)"""
    global _feature_flags
    _feature_flags = None
