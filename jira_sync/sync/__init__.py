"""Resumable backfill of GitHub data into Jira"""

from jira_sync.sync.backfill_since_date import calc_new_backfill_since_date
from jira_sync.sync.sync_utils import find_or_start_sync

__all__ = ["calc_new_backfill_since_date", "find_or_start_sync"]
