"""Tests for frame counting and work partitioning."""

from __future__ import annotations

import pytest

from caption_export.core.planner import FrameRange, frame_count, plan_frame_ranges


class TestFrameCount:

    @pytest.mark.parametrize("duration, fps, expected", [
        (2.0, 30, 60),
        (1.1, 30, 33),
        (0.01, 30, 1),
        (0.0, 30, 0),
        (-1.0, 30, 0),
        (10.0, 29.97, 300),
    ])
    def test_ceil_of_duration_times_fps(self, duration, fps, expected):
        assert frame_count(duration, fps) == expected


class TestPlanFrameRanges:

    def test_ten_frames_four_workers(self):
        ranges = plan_frame_ranges(10, 4)
        assert [(r.start, r.stop) for r in ranges] == [(0, 3), (3, 6), (6, 9), (9, 10)]
        assert [r.worker for r in ranges] == [0, 1, 2, 3]

    def test_zero_frames(self):
        assert plan_frame_ranges(0, 4) == []

    def test_fewer_frames_than_workers(self):
        ranges = plan_frame_ranges(3, 8)
        assert [(r.start, r.stop) for r in ranges] == [(0, 1), (1, 2), (2, 3)]

    def test_single_worker(self):
        assert plan_frame_ranges(7, 1) == [FrameRange(worker=0, start=0, stop=7)]

    @pytest.mark.parametrize("total", [1, 2, 9, 10, 11, 97, 300])
    @pytest.mark.parametrize("concurrency", [1, 2, 3, 4, 7, 16])
    def test_ranges_partition_every_frame_once(self, total, concurrency):
        ranges = plan_frame_ranges(total, concurrency)
        assert len(ranges) <= concurrency
        covered = [i for r in ranges for i in range(r.start, r.stop)]
        assert covered == list(range(total))
        assert all(len(r) > 0 for r in ranges)

    def test_invalid_concurrency(self):
        with pytest.raises(ValueError):
            plan_frame_ranges(10, 0)

    def test_negative_total(self):
        with pytest.raises(ValueError):
            plan_frame_ranges(-1, 4)


class TestFrameJobs:

    def test_jobs_are_timestamped_by_index(self):
        jobs = list(FrameRange(worker=1, start=3, stop=6).jobs(30.0))
        assert [j.index for j in jobs] == [3, 4, 5]
        assert jobs[0].timestamp_s == pytest.approx(0.1)
        assert jobs[2].timestamp_s == pytest.approx(5 / 30)
