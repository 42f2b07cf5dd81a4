"""
Tests for session and device tracking.
"""

import pytest

from orgadmin.auth.devices import DeviceTracker, apply_login, apply_logout
from orgadmin.auth.errors import NotFoundError, ValidationError
from orgadmin.auth.models import Account


def make_account(max_devices=2):
    return Account(
        account_id="acc-1",
        user_id="u-1",
        username="alice",
        password_hash="x",
        max_allowed_devices=max_devices,
    )


class TestApplyLogin:
    """Test in-memory login bookkeeping."""

    def test_first_login_creates_device(self, clock):
        account = make_account()
        record = apply_login(account, "dev-1", "10.0.0.1", "pytest", clock())

        assert record.is_new_device
        assert record.login_count == 1
        assert record.total_devices == 1
        assert account.is_logged_in
        assert account.last_login == clock()
        assert account.get_device("dev-1").ip_address == "10.0.0.1"

    def test_generated_device_id(self, clock):
        account = make_account()
        record = apply_login(account, None, None, None, clock())
        assert record.device_id
        assert account.get_device(record.device_id) is not None

    def test_relogin_closes_open_event(self, clock):
        """Logging in again on a device leaves exactly one open event."""
        account = make_account()
        apply_login(account, "dev-1", None, None, clock())
        clock.advance(minutes=5)
        record = apply_login(account, "dev-1", None, None, clock())

        device = account.get_device("dev-1")
        assert record.login_count == 2
        assert not record.is_new_device
        assert len(device.history) == 2
        assert device.history[0].logout_at == clock()
        assert [e.is_open for e in device.history] == [False, True]

    def test_cap_evicts_oldest(self, clock):
        """The third distinct device evicts the first one inserted."""
        account = make_account(max_devices=2)
        apply_login(account, "dev-1", None, None, clock())
        apply_login(account, "dev-2", None, None, clock())
        account.get_device("dev-1").refresh_token = "token-1"

        record = apply_login(account, "dev-3", None, None, clock())

        assert record.evicted == ["dev-1"]
        assert [d.device_id for d in account.devices] == ["dev-2", "dev-3"]
        assert account.get_device("dev-1") is None
        assert account.get_device("dev-3") is account.devices[1]

    def test_known_device_does_not_evict(self, clock):
        account = make_account(max_devices=2)
        apply_login(account, "dev-1", None, None, clock())
        apply_login(account, "dev-2", None, None, clock())

        record = apply_login(account, "dev-1", None, None, clock())

        assert record.evicted == []
        assert len(account.devices) == 2

    def test_count_never_exceeds_cap(self, clock):
        account = make_account(max_devices=3)
        for i in range(10):
            apply_login(account, f"dev-{i}", None, None, clock())
            assert len(account.devices) <= 3


class TestApplyLogout:
    """Test in-memory logout bookkeeping."""

    def test_logout_last_device_clears_flag(self, clock):
        account = make_account()
        apply_login(account, "dev-1", None, None, clock())
        apply_login(account, "dev-2", None, None, clock())

        assert apply_logout(account, "dev-1", clock()) == ["dev-1"]
        assert account.is_logged_in

        assert apply_logout(account, "dev-2", clock()) == ["dev-2"]
        assert not account.is_logged_in

    def test_logout_clears_refresh_token(self, clock):
        account = make_account()
        apply_login(account, "dev-1", None, None, clock())
        account.get_device("dev-1").refresh_token = "token"

        apply_logout(account, "dev-1", clock())
        assert account.get_device("dev-1").refresh_token is None

    def test_logout_unknown_device_is_noop(self, clock):
        account = make_account()
        apply_login(account, "dev-1", None, None, clock())

        assert apply_logout(account, "nope", clock()) == []
        assert account.is_logged_in


class TestDeviceTracker:
    """Test persisted device tracking."""

    def test_login_persists(self, db, clock, create_user):
        account = create_user()
        tracker = DeviceTracker(db, clock=clock)

        tracker.record_login(account.account_id, "dev-1", "10.0.0.1", "pytest")

        stored = db.get_account(account.account_id)
        assert stored.is_logged_in
        assert stored.get_device("dev-1").login_count == 1
        assert stored.get_device("dev-1").history[0].login_at == clock()

    def test_eviction_order_survives_reload(self, db, clock, create_user):
        account = create_user()
        tracker = DeviceTracker(db, clock=clock)
        for device_id in ("dev-a", "dev-b", "dev-c"):
            clock.advance(seconds=1)
            tracker.record_login(account.account_id, device_id)

        stored = db.get_account(account.account_id)
        assert [d.device_id for d in stored.devices] == ["dev-b", "dev-c"]

    def test_active_devices_hide_tokens(self, db, clock, create_user):
        account = create_user()
        tracker = DeviceTracker(db, clock=clock)
        tracker.record_login(account.account_id, "dev-1")

        devices = tracker.get_active_devices(account.account_id)

        assert [d["deviceId"] for d in devices] == ["dev-1"]
        assert devices[0]["isActive"]
        assert "refreshToken" not in devices[0]

    def test_logout_device_unknown(self, db, clock, create_user):
        account = create_user()
        tracker = DeviceTracker(db, clock=clock)

        with pytest.raises(NotFoundError, match="Device not found"):
            tracker.logout_device(account.account_id, "ghost")
        with pytest.raises(ValidationError):
            tracker.logout_device(account.account_id, "")

    def test_logout_all(self, db, clock, create_user):
        account = create_user()
        tracker = DeviceTracker(db, clock=clock)
        tracker.record_login(account.account_id, "dev-1")
        tracker.record_login(account.account_id, "dev-2")

        record = tracker.logout_all(account.account_id)

        assert sorted(record.logged_out) == ["dev-1", "dev-2"]
        assert not record.is_logged_in
        assert tracker.get_active_devices(account.account_id) == []
        assert len(tracker.list_devices(account.account_id)) == 2

    def test_login_history_pagination(self, db, clock, create_user):
        account = create_user()
        tracker = DeviceTracker(db, clock=clock)
        for _ in range(3):
            clock.advance(minutes=1)
            tracker.record_login(account.account_id, "dev-1")
        clock.advance(minutes=1)
        tracker.record_login(account.account_id, "dev-2")

        page = tracker.get_login_history(account.account_id, page=1, limit=3)

        assert page["pagination"] == {"total": 4, "page": 1, "limit": 3, "pages": 2}
        assert page["loginHistory"][0]["deviceId"] == "dev-2"
        assert page["loginHistory"][0]["logoutAt"] is None

        only_dev1 = tracker.get_login_history(account.account_id, device_id="dev-1")
        assert only_dev1["pagination"]["total"] == 3

    def test_unknown_account(self, db, clock):
        with pytest.raises(NotFoundError, match="User login record not found"):
            DeviceTracker(db, clock=clock).get_active_devices("missing")
