"""Backfill horizon calculation"""

from datetime import datetime
from typing import Optional


def calc_new_backfill_since_date(
    existing_backfill_since: Optional[datetime],
    new_backfill_since: Optional[datetime],
    sync_type: Optional[str],
    is_initial_sync: Optional[bool],
) -> Optional[datetime]:
    """Decide the "sync since" date a subscription keeps after a sync request.

    None means everything since the beginning. Partial syncs never move the
    horizon. An initial full sync adopts the requested date as-is. A later
    full sync keeps whichever horizon reaches further back.
    """
    if sync_type == "partial":
        return existing_backfill_since

    if is_initial_sync:
        return new_backfill_since

    if existing_backfill_since is None or new_backfill_since is None:
        return None

    return min(existing_backfill_since, new_backfill_since)
