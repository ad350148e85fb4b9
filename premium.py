"""
Premium subscription status and the free-tier tracker limit.

The purchase flow itself lives in the app store; this module only records the
result in user_preferences (remote first, then mirrored locally).
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict

from supabase_rest import SupabaseError

logger = logging.getLogger(__name__)

PREMIUM_DURATION_DAYS = 30
FREE_TRACKER_LIMIT = 10


class TrackerLimitError(Exception):
    """Raised when a free user already has FREE_TRACKER_LIMIT trackers."""


def _parse_timestamp(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _mirror_to_local(db, user_id: Optional[str], active: bool, expires_at: Optional[str]):
    try:
        db.update_user_preferences(user_id, premium_active=active, premium_expires_at=expires_at)
    except Exception as e:
        logger.error(f"Error syncing premium to local: {e}")


def check_premium_status(db, client, user_id: Optional[str], now: datetime = None) -> bool:
    """Whether the user currently has premium.

    Anonymous users and remote failures fall back to the local flag. An expired
    remote subscription is deactivated on the spot.
    """
    if not user_id:
        return bool(db.get_user_preferences(None).get("premium_active"))

    result = (client.table("user_preferences")
              .select("premium_active,premium_expires_at")
              .eq("user_id", user_id).single().execute())
    if result.error is not None:
        logger.error(f"Error checking premium status: {result.error}")
        return bool(db.get_user_preferences(user_id).get("premium_active"))

    data = result.data
    if not data:
        return False

    if data.get("premium_active"):
        expires_at = data.get("premium_expires_at")
        if expires_at:
            expiry = _parse_timestamp(expires_at)
            if expiry is not None and expiry < (now or datetime.now(timezone.utc)):
                try:
                    deactivate_premium(db, client, user_id)
                except SupabaseError as e:
                    logger.error(f"Error deactivating expired premium: {e}")
                    return bool(db.get_user_preferences(user_id).get("premium_active"))
                return False

        _mirror_to_local(db, user_id, True, expires_at)
        return True

    _mirror_to_local(db, user_id, False, None)
    return False


def activate_premium(db, client, user_id: str, now: datetime = None) -> str:
    """Record a purchase: premium for PREMIUM_DURATION_DAYS. Returns the expiry timestamp.

    Raises:
        SupabaseError: if the remote upsert fails (nothing is written locally).
    """
    expires = (now or datetime.now(timezone.utc)) + timedelta(days=PREMIUM_DURATION_DAYS)
    expires_at = expires.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    result = client.table("user_preferences").upsert({
        "user_id": user_id,
        "premium_active": True,
        "premium_expires_at": expires_at,
    }, on_conflict="user_id").execute()
    result.raise_for_error()

    _mirror_to_local(db, user_id, True, expires_at)
    logger.info(f"Premium activated for {user_id} until {expires_at}")
    return expires_at


def deactivate_premium(db, client, user_id: str):
    """Turn premium off remotely and locally.

    Raises:
        SupabaseError: if the remote update fails.
    """
    result = (client.table("user_preferences")
              .update({"premium_active": False, "premium_expires_at": None})
              .eq("user_id", user_id).execute())
    result.raise_for_error()

    _mirror_to_local(db, user_id, False, None)
    logger.info(f"Premium deactivated for {user_id}")


def can_create_tracker(db, user_id: Optional[str]) -> bool:
    """Free users may own at most FREE_TRACKER_LIMIT trackers."""
    prefs = db.get_user_preferences(user_id)
    if prefs.get("premium_active"):
        return True
    return db.get_tracker_count(user_id) < FREE_TRACKER_LIMIT


def create_tracker_checked(db, user_id: Optional[str], name: str, description: str = "",
                           color: str = None) -> Dict:
    """Create a tracker after enforcing the free-tier limit.

    Raises:
        TrackerLimitError: for a non-premium user at the limit.
        ValueError: for a blank name.
    """
    name = (name or "").strip()
    if not name:
        raise ValueError("Tracker name is required")
    if not can_create_tracker(db, user_id):
        raise TrackerLimitError(f"Free plan is limited to {FREE_TRACKER_LIMIT} trackers")
    return db.create_tracker(user_id, name, (description or "").strip(), color=color)
