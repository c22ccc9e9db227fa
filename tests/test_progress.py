"""Tests for the progress store and stage reporters.

RULES:
- Each test creates its own ProgressStore and closes it
- Retention tests use monkeypatch to control time.time()
"""

from __future__ import annotations

import threading
import time

import pytest

from caption_export.core.progress import (
    ProgressState,
    ProgressStore,
    Stage,
    StageReporter,
    band_percent,
)


@pytest.fixture
def store():
    store = ProgressStore()
    yield store
    store.close()


class TestBands:

    @pytest.mark.parametrize("stage, fraction, expected", [
        (Stage.INIT, 0.0, 0.0),
        (Stage.INIT, 1.0, 10.0),
        (Stage.FRAMES, 0.5, 20.0),
        (Stage.CAPTIONS, 0.25, 40.0),
        (Stage.ENCODE, 1.0, 95.0),
        (Stage.FINALIZE, 1.0, 100.0),
    ])
    def test_band_percent(self, stage, fraction, expected):
        assert band_percent(stage, fraction) == expected

    def test_fraction_is_clamped(self):
        assert band_percent(Stage.FRAMES, 2.0) == 30.0
        assert band_percent(Stage.FRAMES, -1.0) == 10.0


class TestProgressStore:

    def test_set_and_get(self, store):
        store.set("job", 12.5, Stage.FRAMES, "Extracting")
        assert store.get("job") == ProgressState(percent=12.5, stage=Stage.FRAMES, message="Extracting")

    def test_unknown_job(self, store):
        assert store.get("nope") is None

    def test_percent_never_decreases(self, store):
        store.set("job", 40.0, Stage.CAPTIONS)
        state = store.set("job", 20.0, Stage.CAPTIONS)
        assert state.percent == 40.0

    def test_percent_is_clamped(self, store):
        assert store.set("job", 250.0, Stage.ENCODE).percent == 100.0
        assert store.set("other", -5.0, Stage.INIT).percent == 0.0

    def test_terminal_update_is_100(self, store):
        store.set("job", 50.0, Stage.CAPTIONS)
        state = store.set("job", 60.0, Stage.ERROR, "boom")
        assert state.percent == 100.0
        assert state.is_terminal

    def test_updates_after_terminal_are_ignored(self, store):
        store.complete("job")
        state = store.set("job", 10.0, Stage.INIT)
        assert state.stage == Stage.COMPLETE
        assert store.get("job").stage == Stage.COMPLETE
        store.fail("job", "late failure")
        assert store.get("job").stage == Stage.COMPLETE

    def test_to_dict(self, store):
        assert store.fail("job", "ffmpeg exited with 1").to_dict() == {
            "progress": 100.0,
            "stage": "error",
            "message": "ffmpeg exited with 1",
        }
        assert ProgressState(percent=5.0, stage=Stage.INIT).to_dict() == {
            "progress": 5.0,
            "stage": "init",
        }

    def test_jobs_are_independent(self, store):
        store.set("a", 80.0, Stage.ENCODE)
        store.set("b", 5.0, Stage.INIT)
        assert store.get("a").percent == 80.0
        assert store.get("b").percent == 5.0


class TestSubscriptions:

    def test_subscriber_receives_updates_in_order(self, store):
        received = []
        store.subscribe("job", received.append)
        store.set("job", 10.0, Stage.FRAMES)
        store.set("job", 30.0, Stage.CAPTIONS)
        store.complete("job")
        assert [s.percent for s in received] == [10.0, 30.0, 100.0]

    def test_subscribe_replays_current_state(self, store):
        store.set("job", 42.0, Stage.CAPTIONS)
        received = []
        store.subscribe("job", received.append)
        assert [s.percent for s in received] == [42.0]

    def test_unsubscribe(self, store):
        received = []
        unsubscribe = store.subscribe("job", received.append)
        unsubscribe()
        store.set("job", 10.0, Stage.FRAMES)
        assert received == []

    def test_other_jobs_are_not_delivered(self, store):
        received = []
        store.subscribe("job", received.append)
        store.set("other", 10.0, Stage.FRAMES)
        assert received == []

    def test_failing_callback_does_not_break_publishing(self, store):
        received = []

        def broken(state):
            raise RuntimeError("subscriber bug")

        store.subscribe("job", broken)
        store.subscribe("job", received.append)
        state = store.set("job", 10.0, Stage.FRAMES)
        assert state.percent == 10.0
        assert received == [state]

    def test_last_delivered_update_is_100(self, store):
        received = []
        store.subscribe("job", received.append)
        reporter = StageReporter(store, "job", Stage.CAPTIONS)
        for i in range(11):
            reporter(i / 10)
        store.fail("job", "worker crashed")
        reporter(0.5)
        assert received[-1].percent == 100.0
        percents = [s.percent for s in received]
        assert percents == sorted(percents)

    def test_concurrent_publishers_stay_monotonic(self, store):
        received = []
        store.subscribe("job", received.append)

        def publish(offset):
            for i in range(50):
                store.set("job", offset + i, Stage.CAPTIONS)

        threads = [threading.Thread(target=publish, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        percents = [s.percent for s in received]
        assert percents == sorted(percents)


class TestRetention:
    """Progress is forgotten retention_s after the job's last update."""

    def test_state_expires_after_retention(self, monkeypatch):
        store = ProgressStore(retention_s=60)
        monkeypatch.setattr(time, "time", lambda: 100.0)
        store.set("job", 10.0, Stage.FRAMES)

        monkeypatch.setattr(time, "time", lambda: 159.0)
        assert store.get("job") is not None
        monkeypatch.setattr(time, "time", lambda: 160.0)
        assert store.get("job") is None

    def test_update_restarts_retention(self, monkeypatch):
        store = ProgressStore(retention_s=60)
        monkeypatch.setattr(time, "time", lambda: 100.0)
        store.set("job", 10.0, Stage.FRAMES)
        monkeypatch.setattr(time, "time", lambda: 150.0)
        store.set("job", 20.0, Stage.FRAMES)

        monkeypatch.setattr(time, "time", lambda: 200.0)
        assert store.get("job").percent == 20.0
        monkeypatch.setattr(time, "time", lambda: 210.0)
        assert store.get("job") is None

    def test_expired_terminal_job_accepts_a_new_run(self, monkeypatch):
        store = ProgressStore(retention_s=60)
        monkeypatch.setattr(time, "time", lambda: 100.0)
        store.complete("job")
        monkeypatch.setattr(time, "time", lambda: 200.0)
        assert store.set("job", 5.0, Stage.INIT).percent == 5.0

    def test_cleanup_expired_sweeps_untouched_jobs(self, monkeypatch):
        store = ProgressStore(retention_s=60)
        monkeypatch.setattr(time, "time", lambda: 100.0)
        store.set("old", 10.0, Stage.FRAMES)
        store.fail("failed", "boom")
        monkeypatch.setattr(time, "time", lambda: 140.0)
        store.set("fresh", 10.0, Stage.FRAMES)

        monkeypatch.setattr(time, "time", lambda: 170.0)
        assert store.cleanup_expired() == 2
        assert store.get("fresh") is not None
        assert store.cleanup_expired() == 0

    def test_expiry_keeps_live_subscribers(self, monkeypatch):
        store = ProgressStore(retention_s=60)
        received = []
        store.subscribe("job", received.append)
        monkeypatch.setattr(time, "time", lambda: 100.0)
        store.set("job", 10.0, Stage.FRAMES)
        monkeypatch.setattr(time, "time", lambda: 200.0)
        store.cleanup_expired()
        store.set("job", 40.0, Stage.CAPTIONS)
        assert [s.percent for s in received] == [10.0, 40.0]

    def test_no_thread_per_update(self, store):
        before = threading.active_count()
        for i in range(200):
            store.set("job", i / 2, Stage.CAPTIONS)
        assert threading.active_count() <= before

    def test_discard(self, store):
        received = []
        store.subscribe("job", received.append)
        store.set("job", 10.0, Stage.FRAMES)
        store.discard("job")
        assert store.get("job") is None
        store.set("job", 20.0, Stage.FRAMES)
        assert len(received) == 1

    def test_close_clears_everything(self):
        store = ProgressStore()
        store.set("a", 10.0, Stage.FRAMES)
        store.set("b", 10.0, Stage.FRAMES)
        store.close()
        assert store.get("a") is None
        assert store.get("b") is None


class TestStageReporter:

    def test_maps_fraction_into_band(self, store):
        reporter = StageReporter(store, "job", Stage.ENCODE, "Encoding")
        state = reporter(0.4)
        assert state.percent == 80.0
        assert state.message == "Encoding"

    def test_start_and_done(self, store):
        reporter = StageReporter(store, "job", Stage.FRAMES)
        assert reporter.start().percent == 10.0
        assert reporter.done().percent == 30.0

    def test_terminal_stage_rejected(self, store):
        with pytest.raises(ValueError):
            StageReporter(store, "job", Stage.COMPLETE)
