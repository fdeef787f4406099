"""
Tests for exchange clock sync.

Verifies the midpoint offset estimate, staleness-driven resync, drift
warnings and that sync failures propagate without a fallback offset.
"""

import logging
from unittest.mock import Mock

import pytest

from core.exceptions import NetworkError
from infra.clock_sync import ClockSync


class FakeTime:
    """Scripted wall clock (seconds) plus a settable monotonic clock."""

    def __init__(self, wall_times):
        self._wall = iter(wall_times)
        self.mono = 0.0

    def time(self):
        return next(self._wall)

    def monotonic(self):
        return self.mono


@pytest.fixture
def fake_time():
    return FakeTime([1000.000, 1000.010, 1000.500])


class TestOffsetCalculation:
    """Offset = Ts - floor((T0 + T1) / 2)"""

    def test_offset_uses_request_midpoint(self, fake_time):
        """Test offset is measured against the midpoint of send/receive."""
        clock = ClockSync(
            fetch_server_time=lambda: 1_000_505,
            time_source=fake_time.time,
            monotonic=fake_time.monotonic,
        )

        offset = clock.sync()

        # T0=1_000_000, T1=1_000_010, midpoint=1_000_005
        assert offset == 500
        assert clock.offset_ms == 500
        assert clock.round_trip_ms == 10

    def test_now_applies_offset(self, fake_time):
        """Test now() returns local ms plus the current offset."""
        clock = ClockSync(
            fetch_server_time=lambda: 1_000_505,
            time_source=fake_time.time,
            monotonic=fake_time.monotonic,
        )
        clock.sync()

        assert clock.now() == 1_000_500 + 500

    def test_negative_offset_when_local_clock_ahead(self):
        """Test a server behind the local clock yields a negative offset."""
        wall = FakeTime([2000.000, 2000.000])
        clock = ClockSync(fetch_server_time=lambda: 1_999_000, time_source=wall.time, monotonic=wall.monotonic)

        assert clock.sync() == -1000

    def test_records_offset_metric(self, fake_time):
        """Test the computed offset is forwarded to metrics."""
        metrics = Mock()
        clock = ClockSync(
            fetch_server_time=lambda: 1_000_505,
            time_source=fake_time.time,
            monotonic=fake_time.monotonic,
            metrics=metrics,
        )
        clock.sync()

        metrics.record_clock_offset.assert_called_once_with(500)


class TestEnsureFresh:
    """Staleness-driven resync"""

    def test_first_call_syncs(self):
        """Test ensure_fresh syncs when never synced."""
        fetch = Mock(return_value=1_000_000)
        clock = ClockSync(fetch_server_time=fetch, monotonic=lambda: 0.0)

        assert clock.ensure_fresh() is True
        assert fetch.call_count == 1

    def test_fresh_offset_is_reused(self):
        """Test no sync happens inside the resync interval."""
        mono = {"t": 0.0}
        fetch = Mock(return_value=1_000_000)
        clock = ClockSync(fetch_server_time=fetch, resync_interval_seconds=60, monotonic=lambda: mono["t"])

        clock.sync()
        mono["t"] = 59.0

        assert clock.ensure_fresh() is False
        assert fetch.call_count == 1

    def test_stale_offset_triggers_resync(self):
        """Test a sync happens once the offset is older than the interval."""
        mono = {"t": 0.0}
        fetch = Mock(return_value=1_000_000)
        clock = ClockSync(fetch_server_time=fetch, resync_interval_seconds=60, monotonic=lambda: mono["t"])

        clock.sync()
        mono["t"] = 60.0

        assert clock.ensure_fresh() is True
        assert fetch.call_count == 2
        assert clock.last_sync_age == 0.0


class TestDriftAndFailures:

    def test_warns_when_drift_exceeds_threshold(self, caplog):
        """Test large offsets are logged as warnings."""
        wall = FakeTime([1000.0, 1000.0])
        clock = ClockSync(fetch_server_time=lambda: 1_005_000, drift_warn_ms=1000,
                          time_source=wall.time, monotonic=wall.monotonic)

        with caplog.at_level(logging.WARNING, logger="infra.clock_sync"):
            clock.sync()

        assert any("Clock drift" in r.message for r in caplog.records)

    def test_no_warning_within_threshold(self, caplog):
        """Test small offsets are not warned about."""
        wall = FakeTime([1000.0, 1000.0])
        clock = ClockSync(fetch_server_time=lambda: 1_000_200, drift_warn_ms=1000,
                          time_source=wall.time, monotonic=wall.monotonic)

        with caplog.at_level(logging.WARNING, logger="infra.clock_sync"):
            clock.sync()

        assert not any("Clock drift" in r.message for r in caplog.records)

    def test_sync_failure_propagates_and_keeps_previous_offset(self):
        """Test a failed sync raises and does not invent an offset."""
        fetch = Mock(side_effect=[1_000_300, NetworkError("timeout")])
        wall = FakeTime([1000.0, 1000.0, 1000.0, 1000.0])
        clock = ClockSync(fetch_server_time=fetch, time_source=wall.time, monotonic=wall.monotonic)

        clock.sync()
        with pytest.raises(NetworkError):
            clock.sync()

        assert clock.offset_ms == 300

    def test_never_synced_has_no_age(self):
        """Test last_sync_age is None before the first sync."""
        clock = ClockSync(fetch_server_time=Mock())

        assert clock.last_sync_age is None
        assert clock.offset_ms == 0
