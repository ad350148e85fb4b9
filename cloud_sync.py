"""
Cloud sync between the local tracker database and Supabase.

push (sync_to_cloud):
- Upserts every unsynced tracker, stamps the local row with the remote id
- Upserts every unsynced observation of trackers that have a remote id,
  uploading its photo first (photo failures degrade the row to text-only)

pull (sync_from_cloud):
- Matches remote trackers to local ones by cloud_id; the policy decides the
  local update (remote wins by default), unmatched remote trackers are created
- Creates local copies of remote observations not yet present locally,
  downloading their photos

Rows are processed one at a time. A failing row is logged, recorded in the
SyncReport and left unsynced for the next pass; nothing is retried.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from attachments import AttachmentError, upload_observation_image, resolve_download_url, download
from user_config import DEFAULT_TRACKER_COLOR, OBSERVATIONS_BUCKET

logger = logging.getLogger(__name__)

# Row outcomes
SYNCED = "synced"
DEGRADED = "degraded"  # synced without its photo
SKIPPED = "skipped"
FAILED = "failed"


@dataclass
class RowResult:
    """Outcome of syncing one row."""
    table: str
    local_id: Optional[str]
    status: str
    cloud_id: Optional[str] = None
    action: Optional[str] = None  # "upsert", "create", "update"
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (SYNCED, DEGRADED)


@dataclass
class SyncReport:
    """Aggregated outcome of one push or pull pass."""
    direction: str
    user_id: Optional[str]
    disabled: bool = False
    results: List[RowResult] = field(default_factory=list)

    def add(self, result: RowResult) -> RowResult:
        self.results.append(result)
        return result

    def count(self, status: str, table: Optional[str] = None) -> int:
        return sum(1 for r in self.results
                   if r.status == status and (table is None or r.table == table))

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return self.count(FAILED)

    @property
    def skipped(self) -> int:
        return self.count(SKIPPED)

    @property
    def degraded(self) -> int:
        return self.count(DEGRADED)

    def as_counts(self) -> Dict[str, int]:
        """Counts per table plus failure totals."""
        counts = {"trackers": 0, "observations": 0}
        for r in self.results:
            if r.ok:
                counts[r.table] = counts.get(r.table, 0) + 1
        counts["failed"] = self.failed
        counts["skipped"] = self.skipped
        counts["degraded"] = self.degraded
        return counts

    def summary(self) -> str:
        if self.disabled:
            return f"{self.direction}: cloud sync disabled"
        return (f"{self.direction}: {self.succeeded} synced, {self.degraded} without photo, "
                f"{self.skipped} skipped, {self.failed} failed")


class ReconciliationPolicy:
    """Decides how a pulled remote tracker is applied to its matching local tracker."""

    def tracker_updates(self, local: Dict, remote: Dict) -> Dict:
        """Return the fields to write to the local tracker."""
        raise NotImplementedError


class RemoteWinsPolicy(ReconciliationPolicy):
    """Remote row overwrites local fields unconditionally. No timestamp comparison."""

    def tracker_updates(self, local: Dict, remote: Dict) -> Dict:
        return {
            "name": remote.get("name"),
            "description": remote.get("description"),
            "color": remote.get("color") or DEFAULT_TRACKER_COLOR,
            "last_restart_at": remote.get("last_restart_at"),
            "restart_count": remote.get("restart_count"),
            "cloud_synced": True,
            "cloud_id": remote["id"],
        }


def _is_cloud_enabled(db, user_id: Optional[str]) -> bool:
    if not user_id:
        return False
    prefs = db.get_user_preferences(user_id)
    return bool(prefs.get("cloud_enabled"))


def _needs_push(row: Dict) -> bool:
    return not row.get("cloud_synced") or not row.get("cloud_id")


# --- Push ---

def _push_tracker(db, client, user_id: str, tracker: Dict) -> RowResult:
    row = {
        "user_id": user_id,
        "name": tracker["name"],
        "description": tracker.get("description"),
        "color": tracker.get("color") or DEFAULT_TRACKER_COLOR,
        "created_at": tracker["created_at"],
        "last_restart_at": tracker["last_restart_at"],
        "restart_count": tracker.get("restart_count") or 0,
    }
    if tracker.get("cloud_id"):
        row["id"] = tracker["cloud_id"]

    try:
        result = client.table("trackers").upsert(row, on_conflict="id").select("*").single().execute()
        result.raise_for_error()
        if not result.data:
            return RowResult("trackers", tracker["id"], SKIPPED, action="upsert", error="no row returned")

        cloud_id = result.data["id"]
        db.update_tracker(tracker["id"], cloud_synced=True, cloud_id=cloud_id)
        logger.debug(f"Pushed tracker {tracker['id']} -> {cloud_id}")
        return RowResult("trackers", tracker["id"], SYNCED, cloud_id=cloud_id, action="upsert")
    except Exception as e:
        logger.error(f"Error syncing tracker {tracker['id']}: {e}")
        return RowResult("trackers", tracker["id"], FAILED, action="upsert", error=str(e))


def _push_observation(db, client, user_id: str, tracker: Dict, obs: Dict) -> RowResult:
    image_url = None
    degraded = False
    if obs.get("image_path"):
        try:
            image_url = upload_observation_image(client, user_id, obs["id"], obs["image_path"])
        except AttachmentError as e:
            logger.warning(f"Error uploading image for observation {obs['id']}: {e}")
            degraded = True

    row = {
        "tracker_id": tracker["cloud_id"],
        "text": obs.get("text"),
        "image_url": image_url,
        "created_at": obs["created_at"],
    }
    if obs.get("cloud_id"):
        row["id"] = obs["cloud_id"]

    try:
        result = client.table("observations").upsert(row, on_conflict="id").select("*").single().execute()
        result.raise_for_error()
        if not result.data:
            return RowResult("observations", obs["id"], SKIPPED, action="upsert", error="no row returned")

        cloud_id = result.data["id"]
        db.update_observation(obs["id"], cloud_synced=True, cloud_id=cloud_id)
        logger.debug(f"Pushed observation {obs['id']} -> {cloud_id}")
        return RowResult("observations", obs["id"], DEGRADED if degraded else SYNCED,
                         cloud_id=cloud_id, action="upsert")
    except Exception as e:
        logger.error(f"Error syncing observation {obs['id']}: {e}")
        return RowResult("observations", obs["id"], FAILED, action="upsert", error=str(e))


def sync_to_cloud(db, client, user_id: Optional[str]) -> SyncReport:
    """Push local changes for a user to Supabase.

    Args:
        db: TrackerDatabase
        client: SupabaseRestClient (or anything with the same table/storage surface)
        user_id: Signed-in user; None (anonymous) is a no-op

    Returns:
        SyncReport with one RowResult per row that needed pushing
    """
    report = SyncReport("push", user_id)
    if not _is_cloud_enabled(db, user_id):
        report.disabled = True
        return report

    for tracker in db.get_all_trackers(user_id):
        if _needs_push(tracker):
            report.add(_push_tracker(db, client, user_id, tracker))

    # Re-read so trackers stamped above carry their cloud_id into the observation pass
    for tracker in db.get_all_trackers(user_id):
        pending = [o for o in db.get_observations_by_tracker(tracker["id"]) if _needs_push(o)]
        if not tracker.get("cloud_id"):
            for obs in pending:
                report.add(RowResult("observations", obs["id"], SKIPPED,
                                     error="tracker not synced yet"))
            continue
        for obs in pending:
            report.add(_push_observation(db, client, user_id, tracker, obs))

    logger.info(report.summary())
    return report


# --- Pull ---

def _pull_tracker(db, user_id: str, remote: Dict, policy: ReconciliationPolicy) -> Tuple[RowResult, Optional[Dict]]:
    try:
        local = db.get_tracker_by_cloud_id(user_id, remote["id"])
        if local:
            db.update_tracker(local["id"], **policy.tracker_updates(local, remote))
            action = "update"
        else:
            local = db.create_tracker(
                user_id,
                name=remote.get("name"),
                description=remote.get("description"),
                color=remote.get("color") or DEFAULT_TRACKER_COLOR,
                restart_count=remote.get("restart_count") or 0,
                created_at=remote.get("created_at"),
                last_restart_at=remote.get("last_restart_at"),
            )
            db.update_tracker(local["id"], cloud_synced=True, cloud_id=remote["id"])
            action = "create"
        return RowResult("trackers", local["id"], SYNCED, cloud_id=remote["id"], action=action), local
    except Exception as e:
        logger.error(f"Error pulling tracker {remote.get('id')}: {e}")
        return RowResult("trackers", None, FAILED, cloud_id=remote.get("id"), error=str(e)), None


def _pull_observation(db, client, user_id: str, local_tracker: Dict, remote: Dict,
                      media_dir) -> Optional[RowResult]:
    try:
        existing = {o.get("cloud_id") for o in db.get_observations_by_tracker(local_tracker["id"])}
        if remote["id"] in existing:
            return None

        image_path = None
        degraded = False
        if remote.get("image_url"):
            try:
                url = resolve_download_url(client, remote["image_url"], user_id, remote["id"])
                image_path = download(url, media_dir, f"{remote['id']}.jpg")
            except AttachmentError as e:
                logger.warning(f"Error downloading image for observation {remote['id']}: {e}")
                degraded = True

        local = db.create_observation(
            local_tracker["id"],
            text=remote.get("text"),
            image_path=image_path,
            created_at=remote.get("created_at"),
        )
        db.update_observation(local["id"], cloud_synced=True, cloud_id=remote["id"])
        return RowResult("observations", local["id"], DEGRADED if degraded else SYNCED,
                         cloud_id=remote["id"], action="create")
    except Exception as e:
        logger.error(f"Error pulling observation {remote.get('id')}: {e}")
        return RowResult("observations", None, FAILED, cloud_id=remote.get("id"), error=str(e))


def sync_from_cloud(db, client, user_id: Optional[str], policy: Optional[ReconciliationPolicy] = None,
                    media_dir=None) -> SyncReport:
    """Pull a user's trackers and observations from Supabase into the local database.

    Args:
        db: TrackerDatabase
        client: SupabaseRestClient
        user_id: Signed-in user; None (anonymous) is a no-op
        policy: How matched trackers are updated (RemoteWinsPolicy by default)
        media_dir: Where downloaded photos are written (user_config.get_media_dir() by default)
    """
    report = SyncReport("pull", user_id)
    if not _is_cloud_enabled(db, user_id):
        report.disabled = True
        return report

    policy = policy or RemoteWinsPolicy()

    result = client.table("trackers").select("*").eq("user_id", user_id).execute()
    if result.error is not None:
        logger.error(f"Error fetching trackers from cloud: {result.error}")
        report.add(RowResult("trackers", None, FAILED, error=str(result.error)))
        return report

    matched = []
    for remote_tracker in result.data or []:
        row_result, local_tracker = _pull_tracker(db, user_id, remote_tracker, policy)
        report.add(row_result)
        if local_tracker is not None:
            matched.append((remote_tracker, local_tracker))

    if media_dir is None and matched:
        from user_config import get_media_dir
        media_dir = get_media_dir()

    for remote_tracker, local_tracker in matched:
        obs_result = client.table("observations").select("*").eq("tracker_id", remote_tracker["id"]).execute()
        if obs_result.error is not None:
            logger.error(f"Error fetching observations for tracker {remote_tracker['id']}: {obs_result.error}")
            report.add(RowResult("observations", None, FAILED, cloud_id=remote_tracker["id"],
                                 error=str(obs_result.error)))
            continue

        for remote_obs in obs_result.data or []:
            row_result = _pull_observation(db, client, user_id, local_tracker, remote_obs, media_dir)
            if row_result is not None:
                report.add(row_result)

    logger.info(report.summary())
    return report


# --- Cloud on/off ---

def delete_cloud_data(client, user_id: Optional[str]) -> bool:
    """Remove a user's photos, observations and trackers from Supabase.

    Returns True if every step succeeded. Errors are logged, not raised.
    """
    if not user_id:
        return False

    ok = True
    bucket = client.storage.from_(OBSERVATIONS_BUCKET)
    listing = bucket.list(user_id)
    if listing.error is not None:
        logger.error(f"Error listing cloud photos: {listing.error}")
        ok = False
    elif listing.data:
        paths = [f"{user_id}/{entry['name']}" for entry in listing.data]
        removed = bucket.remove(paths)
        if removed.error is not None:
            logger.error(f"Error removing cloud photos: {removed.error}")
            ok = False
        else:
            logger.info(f"Removed {len(paths)} cloud photos")

    trackers = client.table("trackers").select("id").eq("user_id", user_id).execute()
    if trackers.error is not None:
        logger.error(f"Error listing cloud trackers: {trackers.error}")
        ok = False
    for tracker in trackers.data or []:
        deleted = client.table("observations").delete().eq("tracker_id", tracker["id"]).execute()
        if deleted.error is not None:
            logger.error(f"Error deleting observations of tracker {tracker['id']}: {deleted.error}")
            ok = False

    deleted = client.table("trackers").delete().eq("user_id", user_id).execute()
    if deleted.error is not None:
        logger.error(f"Error deleting cloud trackers: {deleted.error}")
        ok = False
    return ok


def set_cloud_enabled(db, client, user_id: Optional[str], enabled: bool,
                      media_dir=None) -> Optional[Tuple[SyncReport, SyncReport]]:
    """Turn cloud storage on (push then pull) or off (wipe the user's cloud data).

    Returns (push_report, pull_report) when enabling, None when disabling.
    """
    db.update_user_preferences(user_id, cloud_enabled=enabled)
    if enabled:
        push_report = sync_to_cloud(db, client, user_id)
        pull_report = sync_from_cloud(db, client, user_id, media_dir=media_dir)
        return push_report, pull_report

    delete_cloud_data(client, user_id)
    return None
