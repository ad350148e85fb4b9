"""
Mirror user_preferences between the local database and Supabase.
"""

import logging
from typing import Optional

from user_config import DEFAULT_THEME, THEMES

logger = logging.getLogger(__name__)


def push_preferences(db, client, user_id: Optional[str]) -> bool:
    """Upsert the full local preference row keyed by user_id. Returns True on success."""
    if not user_id:
        return False

    prefs = db.get_user_preferences(user_id)
    row = {
        "user_id": user_id,
        "cloud_enabled": bool(prefs.get("cloud_enabled")),
        "premium_active": bool(prefs.get("premium_active")),
        "premium_expires_at": prefs.get("premium_expires_at"),
        "theme": prefs.get("theme") or DEFAULT_THEME,
    }
    result = client.table("user_preferences").upsert(row, on_conflict="user_id").execute()
    if result.error is not None:
        logger.error(f"Error syncing user preferences to cloud: {result.error}")
        return False
    return True


def pull_preferences(db, client, user_id: Optional[str]) -> bool:
    """Overwrite local preferences with the remote row (remote wins).

    Returns True if a remote row was applied; False when there is none ("no rows")
    or the fetch failed.
    """
    if not user_id:
        return False

    result = client.table("user_preferences").select("*").eq("user_id", user_id).single().execute()
    if result.error is not None:
        if not result.error.is_no_rows:
            logger.error(f"Error syncing user preferences from cloud: {result.error}")
        return False

    data = result.data
    if not data:
        return False

    theme = data.get("theme")
    db.update_user_preferences(
        user_id,
        cloud_enabled=bool(data.get("cloud_enabled")),
        premium_active=bool(data.get("premium_active")),
        premium_expires_at=data.get("premium_expires_at"),
        theme=theme if theme in THEMES else DEFAULT_THEME,
    )
    return True
