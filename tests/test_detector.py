"""Tests for the lag spike detection state machine."""

import logging
import threading
import time

from spikewatch.collector import ThreadSnapshotCollector
from spikewatch.detector import SPIKE_NOTICE, DetectorState, LagSpikeDetector
from spikewatch.models import Requester

MS = 1_000_000
SECOND = 1_000_000_000


def tick_on_every_sleep(heartbeat):
    def on_sleep(clock):
        heartbeat.record_tick(clock.now_ns)

    return on_sleep


class TestPoll:
    """Single poll transitions."""

    def test_unset_heartbeat_does_not_trigger(self, make_detector, clock, introspector):
        detector = make_detector()
        session = detector.new_session(None, 10)
        clock.now_ns += 5 * SECOND

        assert detector.poll(session) is DetectorState.POLLING
        assert introspector.dump_calls == []

    def test_latch_set_held_and_cleared(self, make_detector, clock, heartbeat):
        detector = make_detector(cooldown_seconds=0)
        session = detector.new_session(None, 10)
        heartbeat.record_tick(clock.now_ns)

        clock.now_ns += 100 * MS
        assert detector.poll(session) is DetectorState.POLLING

        clock.now_ns += 150 * MS
        assert detector.poll(session) is DetectorState.SPIKE_LATCHED
        assert session.reports == 1

        clock.now_ns += 500 * MS
        assert detector.poll(session) is DetectorState.SPIKE_LATCHED
        assert session.reports == 1

        heartbeat.record_tick(clock.now_ns)
        assert detector.poll(session) is DetectorState.POLLING

    def test_expired_session_finishes_without_stall(self, make_detector, clock, heartbeat):
        detector = make_detector()
        session = detector.new_session(None, 1)
        clock.now_ns += 2 * SECOND
        heartbeat.record_tick(clock.now_ns)

        assert detector.poll(session) is DetectorState.FINISHED

    def test_stopped_host_finishes_without_report(
        self, make_detector, clock, heartbeat, liveness, caplog
    ):
        liveness.running = False
        detector = make_detector()
        session = detector.new_session(None, 10)
        heartbeat.record_tick(clock.now_ns)
        clock.now_ns += SECOND

        with caplog.at_level(logging.ERROR):
            assert detector.poll(session) is DetectorState.FINISHED

        assert session.reports == 0
        assert caplog.records == []

    def test_host_liveness_queried_per_new_stall(self, make_detector, clock, heartbeat, liveness):
        liveness.stopped = True
        detector = make_detector()
        session = detector.new_session(None, 10)
        heartbeat.record_tick(clock.now_ns)

        clock.now_ns += 50 * MS
        detector.poll(session)
        assert liveness.calls == 0

        clock.now_ns += SECOND
        assert detector.poll(session) is DetectorState.FINISHED
        assert liveness.calls == 1


class TestRun:
    """Whole sessions on the fake clock."""

    def test_no_report_while_heartbeat_keeps_up(self, make_detector, clock, heartbeat):
        clock.on_sleep = tick_on_every_sleep(heartbeat)
        heartbeat.record_tick(clock.now_ns)
        detector = make_detector()
        session = detector.new_session(None, 3)

        detector.run(session)

        assert session.finished
        assert session.reports == 0
        assert clock.elapsed() >= 3

    def test_sustained_stall_reports_once(self, make_detector, clock, heartbeat, caplog):
        heartbeat.record_tick(clock.now_ns)
        detector = make_detector(cooldown_seconds=0)
        session = detector.new_session(None, 5)

        with caplog.at_level(logging.ERROR, logger="spikewatch"):
            detector.run(session)

        assert session.reports == 1
        reports = [r for r in caplog.records if "lag spiked" in r.getMessage()]
        assert len(reports) == 1
        assert '"MainThread" RUNNABLE' in reports[0].getMessage()

    def test_recovery_rearms_latch(self, make_detector, clock, heartbeat):
        stalls = [(0.5, 1.0), (2.0, 2.5)]

        def on_sleep(c):
            if not any(start <= c.elapsed() < end for start, end in stalls):
                heartbeat.record_tick(c.now_ns)

        clock.on_sleep = on_sleep
        heartbeat.record_tick(clock.now_ns)
        detector = make_detector(cooldown_seconds=0)
        session = detector.new_session(None, 3)

        detector.run(session)

        assert session.reports == 2

    def test_cooldown_after_report(self, make_detector, clock, heartbeat):
        heartbeat.record_tick(clock.now_ns)
        detector = make_detector(cooldown_seconds=15)
        session = detector.new_session(None, 60)

        detector.poll(session)
        clock.now_ns += SECOND
        detector.poll(session)

        assert clock.sleeps == [15]

    def test_polls_at_configured_interval(self, make_detector, clock, heartbeat):
        clock.on_sleep = tick_on_every_sleep(heartbeat)
        heartbeat.record_tick(clock.now_ns)
        detector = make_detector(threshold_ms=600)
        session = detector.new_session(None, 1)

        detector.run(session)

        assert set(clock.sleeps) == {0.1}


class TestNotifications:
    """Operator notification on detection."""

    def _stall(self, make_detector, clock, heartbeat, requester):
        heartbeat.record_tick(clock.now_ns)
        detector = make_detector(cooldown_seconds=0)
        session = detector.new_session(requester, 10)
        clock.now_ns += SECOND
        detector.poll(session)
        return session

    def test_interactive_requester_is_notified(self, make_detector, clock, heartbeat, output):
        requester = Requester("ops")

        self._stall(make_detector, clock, heartbeat, requester)

        assert output.sent == [(requester, SPIKE_NOTICE)]

    def test_headless_requester_is_not_notified(
        self, make_detector, clock, heartbeat, output, caplog
    ):
        with caplog.at_level(logging.ERROR, logger="spikewatch"):
            self._stall(make_detector, clock, heartbeat, Requester("console", headless=True))

        assert output.sent == []
        assert any("lag spiked" in r.getMessage() for r in caplog.records)

    def test_no_requester_is_not_notified(self, make_detector, clock, heartbeat, output):
        session = self._stall(make_detector, clock, heartbeat, None)

        assert session.reports == 1
        assert output.sent == []


def test_wake_cuts_default_sleep_short(heartbeat, introspector, output, liveness):
    detector = LagSpikeDetector(heartbeat, ThreadSnapshotCollector(introspector), liveness, output)
    sleeper = threading.Thread(target=detector._wait, args=(30,), daemon=True)
    started = time.monotonic()
    sleeper.start()
    detector.wake()
    sleeper.join(timeout=5)

    assert not sleeper.is_alive()
    assert time.monotonic() - started < 5


def test_wake_after_timed_out_wait_carries_to_next_sleep(heartbeat, introspector, output, liveness):
    detector = LagSpikeDetector(heartbeat, ThreadSnapshotCollector(introspector), liveness, output)
    event = detector._wake_event
    timed_out = event.wait

    def wait_then_wake(timeout=None):
        result = timed_out(timeout)
        # a wake landing after the timeout but before the caller resumes
        event.set()
        return result

    event.wait = wait_then_wake
    detector._wait(0.01)
    event.wait = timed_out

    started = time.monotonic()
    detector._wait(5)
    assert time.monotonic() - started < 1
