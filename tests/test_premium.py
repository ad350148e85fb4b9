"""Tests for premium status and the free-tier tracker limit."""

from datetime import datetime, timezone

import pytest

from premium import (
    FREE_TRACKER_LIMIT,
    TrackerLimitError,
    activate_premium,
    can_create_tracker,
    check_premium_status,
    create_tracker_checked,
    deactivate_premium,
)
from supabase_rest import SupabaseError

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class TestCheckPremium:
    def test_active_subscription_is_mirrored(self, db, cloud, user_id):
        cloud.tables["user_preferences"] = [{
            "user_id": user_id, "premium_active": True, "premium_expires_at": "2024-07-01T00:00:00.000Z"}]

        assert check_premium_status(db, cloud, user_id, now=NOW) is True

        prefs = db.get_user_preferences(user_id)
        assert prefs["premium_active"] is True
        assert prefs["premium_expires_at"] == "2024-07-01T00:00:00.000Z"

    def test_expired_subscription_is_deactivated(self, db, cloud, user_id):
        db.update_user_preferences(user_id, premium_active=True)
        cloud.tables["user_preferences"] = [{
            "user_id": user_id, "premium_active": True, "premium_expires_at": "2024-05-01T00:00:00.000Z"}]

        assert check_premium_status(db, cloud, user_id, now=NOW) is False

        assert cloud.rows("user_preferences")[0]["premium_active"] is False
        assert cloud.rows("user_preferences")[0]["premium_expires_at"] is None
        assert db.get_user_preferences(user_id)["premium_active"] is False

    def test_failed_expiry_update_falls_back_to_local(self, db, cloud, user_id):
        db.update_user_preferences(user_id, premium_active=True)
        cloud.tables["user_preferences"] = [{
            "user_id": user_id, "premium_active": True, "premium_expires_at": "2024-05-01T00:00:00.000Z"}]
        cloud.failures.append(lambda table, op, payload: op == "update")

        assert check_premium_status(db, cloud, user_id, now=NOW) is True

        assert cloud.rows("user_preferences")[0]["premium_active"] is True
        assert db.get_user_preferences(user_id)["premium_active"] is True

    def test_inactive_remote_clears_local(self, db, cloud, user_id):
        db.update_user_preferences(user_id, premium_active=True, premium_expires_at="2030-01-01T00:00:00.000Z")
        cloud.tables["user_preferences"] = [{"user_id": user_id, "premium_active": False}]

        assert check_premium_status(db, cloud, user_id, now=NOW) is False
        assert db.get_user_preferences(user_id)["premium_expires_at"] is None

    def test_remote_error_falls_back_to_local(self, db, cloud, user_id):
        db.update_user_preferences(user_id, premium_active=True)
        cloud.failures.append(lambda table, op, payload: True)

        assert check_premium_status(db, cloud, user_id, now=NOW) is True

    def test_anonymous_uses_local_flag_only(self, db, cloud):
        db.update_user_preferences(None, premium_active=True)

        assert check_premium_status(db, cloud, None) is True
        assert cloud.calls == []


class TestActivation:
    def test_activate_for_thirty_days(self, db, cloud, user_id):
        expires_at = activate_premium(db, cloud, user_id, now=NOW)

        assert expires_at == "2024-07-01T12:00:00.000Z"
        assert cloud.rows("user_preferences")[0]["premium_active"] is True
        assert db.get_user_preferences(user_id)["premium_expires_at"] == expires_at
        assert check_premium_status(db, cloud, user_id, now=NOW) is True

    def test_activate_failure_writes_nothing_locally(self, db, cloud, user_id):
        cloud.failures.append(lambda table, op, payload: op == "upsert")

        with pytest.raises(SupabaseError):
            activate_premium(db, cloud, user_id, now=NOW)
        assert db.get_user_preferences(user_id)["premium_active"] is False

    def test_deactivate(self, db, cloud, user_id):
        activate_premium(db, cloud, user_id, now=NOW)

        deactivate_premium(db, cloud, user_id)

        assert db.get_user_preferences(user_id)["premium_active"] is False
        assert cloud.rows("user_preferences")[0]["premium_active"] is False


class TestTrackerLimit:
    def test_free_user_is_capped(self, db, user_id):
        for i in range(FREE_TRACKER_LIMIT):
            create_tracker_checked(db, user_id, f"Tracker {i}")

        assert can_create_tracker(db, user_id) is False
        with pytest.raises(TrackerLimitError):
            create_tracker_checked(db, user_id, "One too many")
        assert db.get_tracker_count(user_id) == FREE_TRACKER_LIMIT

    def test_premium_user_is_not_capped(self, db, user_id):
        db.update_user_preferences(user_id, premium_active=True)
        for i in range(FREE_TRACKER_LIMIT):
            db.create_tracker(user_id, f"Tracker {i}")

        tracker = create_tracker_checked(db, user_id, "Eleventh")

        assert tracker["name"] == "Eleventh"

    def test_blank_name_rejected(self, db, user_id):
        with pytest.raises(ValueError):
            create_tracker_checked(db, user_id, "   ")

    def test_name_and_description_are_trimmed(self, db, user_id):
        tracker = create_tracker_checked(db, user_id, "  Water ", " daily  ", color="#FF0000")

        assert tracker["name"] == "Water"
        assert tracker["description"] == "daily"
        assert tracker["color"] == "#FF0000"
