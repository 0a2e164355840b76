"""Feature flag lookup.

Values come from settings, with optional per-Jira-host overrides taken from
``settings.flag_overrides``. Lookups never raise: a broken value falls back
to the default and is logged.
"""

import enum
import logging
from typing import Any, Optional

from jira_sync.config import settings

logger = logging.getLogger(__name__)


class BooleanFlags(str, enum.Enum):
    REMOVE_STALE_MESSAGES = "remove-stale-messages"


class StringFlags(str, enum.Enum):
    LOG_LEVEL = "log-level"


class NumberFlags(str, enum.Enum):
    SYNC_MAIN_COMMIT_TIME_LIMIT = "sync-main-commit-time-limit"
    SYNC_BRANCH_COMMIT_TIME_LIMIT = "sync-branch-commit-time-limit"
    PREEMPTIVE_RATE_LIMIT_THRESHOLD = "preemptive-rate-limit-threshold"
    BACKFILL_PAGE_SIZE = "backfill-page-size"


def _base_value(flag: enum.Enum) -> Any:
    # "remove-stale-messages" -> settings.remove_stale_messages
    return getattr(settings, flag.value.replace("-", "_"), None)


def _lookup(flag: enum.Enum, default: Any, jira_host: Optional[str]) -> Any:
    try:
        overrides = settings.flag_overrides.get(flag.value) or {}
        if jira_host and jira_host in overrides:
            return overrides[jira_host]
        value = _base_value(flag)
        return default if value is None else value
    except Exception as e:
        logger.error(f"Error resolving value for feature flag {flag.value}: {e}")
        return default


def bool_flag(flag: BooleanFlags, jira_host: Optional[str] = None) -> bool:
    return bool(_lookup(flag, False, jira_host))


def string_flag(flag: StringFlags, default: str, jira_host: Optional[str] = None) -> str:
    return str(_lookup(flag, default, jira_host))


def number_flag(flag: NumberFlags, default: Optional[float], jira_host: Optional[str] = None) -> Optional[float]:
    value = _lookup(flag, default, jira_host)
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.error(f"Feature flag {flag.value} has non-numeric value {value!r}")
        return default
