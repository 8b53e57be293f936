"""Tests for the job state machine and external state mapping."""

from datetime import datetime, timezone

import pytest

from api.enums import ErrorCode, JobState
from api.errors import ValidationError
from api.job_state import (
    JobRow,
    StatusUpdate,
    clamp_progress,
    job_state_machine,
    map_external_state,
)


def _job(state=JobState.QUEUED, progress=0, error_code=None, error_message=None, reopen_count=0):
    now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    return JobRow(
        id=1,
        external_id="ext-1",
        title="Test Video",
        state=state,
        progress_percent=progress,
        error_code=error_code,
        error_message=error_message,
        duration_seconds=None,
        playback_hls_url=None,
        playback_dash_url=None,
        thumbnail_url=None,
        reopen_count=reopen_count,
        version=1,
        created_at=now,
        updated_at=now,
    )


class TestMapExternalState:
    """Tests for translating the transcoding service's vocabulary."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("pendingupload", JobState.QUEUED),
            ("downloading", JobState.QUEUED),
            ("queued", JobState.QUEUED),
            ("inprogress", JobState.IN_PROGRESS),
            ("InProgress", JobState.IN_PROGRESS),
            ("ready", JobState.READY),
            ("error", JobState.FAILED),
            (" Failed ", JobState.FAILED),
        ],
    )
    def test_known_states(self, value, expected):
        """Known values map case-insensitively."""
        assert map_external_state(value) == expected

    @pytest.mark.parametrize("value", [None, "", "exploded"])
    def test_unknown_states_raise(self, value):
        """Missing or unknown values are a validation error."""
        with pytest.raises(ValidationError):
            map_external_state(value)


class TestClampProgress:
    """Tests for progress coercion."""

    def test_values_are_clamped(self):
        assert clamp_progress(-5) == 0
        assert clamp_progress(150) == 100
        assert clamp_progress(45.9) == 45

    def test_numeric_strings(self):
        assert clamp_progress("45.5") == 45

    def test_garbage_is_zero(self):
        assert clamp_progress(None) == 0
        assert clamp_progress("n/a") == 0


class TestTransitions:
    """Tests for the transition table."""

    def test_queued_to_in_progress(self):
        values = job_state_machine.plan_update(_job(), StatusUpdate(JobState.IN_PROGRESS, progress_percent=45))
        assert values["state"] == "in_progress"
        assert values["progress_percent"] == 45

    def test_queued_to_failed(self):
        values = job_state_machine.plan_update(
            _job(), StatusUpdate(JobState.FAILED, error_code="ERR_CODEC", error_message="bad codec")
        )
        assert values["state"] == "failed"
        assert values["error_code"] == "ERR_CODEC"
        assert values["error_message"] == "bad codec"

    def test_queued_to_ready_rejected(self):
        """Ready requires in-progress to have been observed first."""
        assert job_state_machine.plan_update(_job(), StatusUpdate(JobState.READY)) is None

    def test_ready_is_terminal(self):
        job = _job(JobState.READY, progress=100)
        for state in JobState:
            assert job_state_machine.plan_update(job, StatusUpdate(state, progress_percent=100)) is None

    def test_in_progress_back_to_queued_rejected(self):
        job = _job(JobState.IN_PROGRESS, progress=50)
        assert job_state_machine.plan_update(job, StatusUpdate(JobState.QUEUED)) is None

    def test_ready_sets_playback_and_full_progress(self):
        job = _job(JobState.IN_PROGRESS, progress=90)
        update = StatusUpdate(
            JobState.READY,
            duration_seconds=600.0,
            playback_hls_url="https://cdn.example/v.m3u8",
            thumbnail_url="https://cdn.example/t.jpg",
        )
        values = job_state_machine.plan_update(job, update)
        assert values["state"] == "ready"
        assert values["progress_percent"] == 100
        assert values["duration_seconds"] == 600.0
        assert values["playback_hls_url"] == "https://cdn.example/v.m3u8"
        assert values["error_code"] is None

    def test_failed_without_code_gets_default(self):
        job = _job(JobState.IN_PROGRESS, progress=50)
        values = job_state_machine.plan_update(job, StatusUpdate(JobState.FAILED))
        assert values["error_code"] == ErrorCode.TRANSCODER_ERROR.value

    def test_reopen_from_failed_counts(self):
        """Failed jobs reopen to in-progress or ready, bumping reopen_count."""
        job = _job(JobState.FAILED, error_code="ERR", reopen_count=1)

        values = job_state_machine.plan_update(job, StatusUpdate(JobState.IN_PROGRESS, progress_percent=5))
        assert values["state"] == "in_progress"
        assert values["reopen_count"] == 2
        assert values["error_code"] is None

        values = job_state_machine.plan_update(job, StatusUpdate(JobState.READY))
        assert values["state"] == "ready"
        assert values["reopen_count"] == 2

    def test_failed_back_to_queued_rejected(self):
        job = _job(JobState.FAILED, error_code="ERR")
        assert job_state_machine.plan_update(job, StatusUpdate(JobState.QUEUED)) is None


class TestSameStateWrites:
    """Tests for redundant and in-place writes."""

    def test_progress_must_increase(self):
        job = _job(JobState.IN_PROGRESS, progress=50)
        assert job_state_machine.plan_update(job, StatusUpdate(JobState.IN_PROGRESS, progress_percent=40)) is None
        assert job_state_machine.plan_update(job, StatusUpdate(JobState.IN_PROGRESS, progress_percent=50)) is None
        assert job_state_machine.plan_update(job, StatusUpdate(JobState.IN_PROGRESS, progress_percent=60)) == {
            "progress_percent": 60
        }

    def test_queued_to_queued_is_noop(self):
        assert job_state_machine.plan_update(_job(), StatusUpdate(JobState.QUEUED)) is None

    def test_failed_same_error_is_noop(self):
        job = _job(JobState.FAILED, error_code="ERR", error_message="boom")
        update = StatusUpdate(JobState.FAILED, error_code="ERR", error_message="boom")
        assert job_state_machine.plan_update(job, update) is None

    def test_failed_new_error_details_applied(self):
        job = _job(JobState.FAILED, error_code="ERR", error_message="boom")
        values = job_state_machine.plan_update(job, StatusUpdate.orphaned("gone"))
        assert values == {"error_code": "orphaned", "error_message": "gone"}


class TestJobRow:
    """Tests for JobRow helpers."""

    def test_from_mapping_tags_naive_datetimes_as_utc(self):
        naive = datetime(2024, 1, 1, 12, 0)
        row = {
            "id": 3,
            "external_id": None,
            "title": None,
            "state": "queued",
            "progress_percent": None,
            "error_code": None,
            "error_message": None,
            "duration_seconds": None,
            "playback_hls_url": None,
            "playback_dash_url": None,
            "thumbnail_url": None,
            "reopen_count": None,
            "version": 1,
            "created_at": naive,
            "updated_at": naive,
        }
        job = JobRow.from_mapping(row)
        assert job.created_at.tzinfo == timezone.utc
        assert job.title == ""
        assert job.progress_percent == 0
        assert job.state == JobState.QUEUED

    def test_is_orphaned(self):
        assert _job(JobState.FAILED, error_code="orphaned").is_orphaned
        assert not _job(JobState.FAILED, error_code="ERR").is_orphaned
        assert not _job(JobState.IN_PROGRESS, error_code="orphaned").is_orphaned

    def test_error_text(self):
        assert StatusUpdate(JobState.FAILED).error_text is None
        assert StatusUpdate(JobState.FAILED, error_code="E1", error_message="bad").error_text == "E1: bad"
        assert StatusUpdate(JobState.FAILED, error_message="bad").error_text == "unknown: bad"
