"""
User Configuration

Supabase credentials, the signed-in session and local data directories.
Stores settings locally under ~/.habittracker (or $HABITTRACKER_HOME).
"""

import json
import logging
import os
from pathlib import Path
from typing import Optional, Dict, Tuple

logger = logging.getLogger(__name__)

# Storage bucket for observation photos
OBSERVATIONS_BUCKET = "observations"

# Signed URL lifetimes (seconds)
UPLOAD_SIGNED_URL_TTL = 31536000  # 1 year, stored as image_url
DOWNLOAD_SIGNED_URL_TTL = 3600  # 1 hour, re-signed on pull

DEFAULT_TRACKER_COLOR = "#3B82F6"
DEFAULT_THEME = "system"
THEMES = ("light", "dark", "system")


def get_app_home() -> Path:
    """Get the app config directory."""
    override = os.environ.get("HABITTRACKER_HOME")
    if override:
        return Path(override)
    return Path.home() / ".habittracker"


def get_config_path() -> Path:
    return get_app_home() / "config.json"


def get_session_path() -> Path:
    return get_app_home() / "session.json"


def get_config() -> dict:
    """Get full user config."""
    path = get_config_path()
    if not path.exists():
        return {}

    try:
        with open(path) as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Failed to read user config: {e}")
        return {}


def set_config_value(key: str, value) -> bool:
    """Set a config value."""
    try:
        config = get_config()
        config[key] = value

        path = get_config_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(config, f, indent=2)
        return True
    except OSError as e:
        logger.error(f"Failed to save config: {e}")
        return False


def get_supabase_credentials() -> Tuple[Optional[str], Optional[str]]:
    """Get (url, anon_key) for the Supabase project.

    Environment variables SUPABASE_URL / SUPABASE_ANON_KEY win over config.json.
    """
    config = get_config()
    url = os.environ.get("SUPABASE_URL") or config.get("supabase_url")
    key = os.environ.get("SUPABASE_ANON_KEY") or config.get("supabase_key")
    return url, key


def set_supabase_credentials(url: str, key: str) -> bool:
    """Store the Supabase project credentials."""
    ok = set_config_value("supabase_url", url.strip())
    return set_config_value("supabase_key", key.strip()) and ok


def get_session() -> Optional[Dict]:
    """Get the stored auth session, if any."""
    path = get_session_path()
    if not path.exists():
        return None
    try:
        with open(path) as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Failed to read auth session: {e}")
        return None


def save_session(user_id: str, access_token: Optional[str] = None, email: Optional[str] = None) -> bool:
    """Store the signed-in user's session."""
    try:
        path = get_session_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        session = {"user_id": user_id, "access_token": access_token, "user_email": email}
        with open(path, "w") as f:
            json.dump(session, f, indent=2)
        logger.info(f"Session saved for user: {user_id}")
        return True
    except OSError as e:
        logger.error(f"Failed to save session: {e}")
        return False


def clear_session():
    """Sign out locally."""
    path = get_session_path()
    if path.exists():
        path.unlink()


def get_current_user_id() -> Optional[str]:
    """Get the signed-in user id from the local session, or None (anonymous)."""
    session = get_session()
    if not session:
        return None
    return session.get("user_id")


def get_access_token() -> Optional[str]:
    session = get_session()
    if not session:
        return None
    return session.get("access_token")


def get_media_dir() -> Path:
    """Directory holding observation photos (imported and downloaded)."""
    configured = get_config().get("media_dir")
    media_dir = Path(configured) if configured else get_app_home() / "media"
    media_dir.mkdir(parents=True, exist_ok=True)
    return media_dir


def get_database_path() -> Path:
    configured = get_config().get("database_path")
    if configured:
        return Path(configured)
    return get_app_home() / "tracker.db"
