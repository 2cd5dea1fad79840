"""Tests for the assignment and merge debounce state machines."""

from datetime import UTC, datetime, timedelta

import pytest

from gradetags.models.db import (
    AssignmentTagState,
    AssignmentTagStatus,
    MergeStateStatus,
    TagDictionaryMergeState,
)
from gradetags.taxonomy.config import PipelineConfig
from gradetags.taxonomy.state_machine import (
    apply_manual_override,
    fail_merge,
    fail_run,
    finish_merge,
    finish_run,
    is_due,
    merge_is_due,
    record_dictionary_change,
    record_grading_event,
)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def at(minutes: float) -> datetime:
    return T0 + timedelta(minutes=minutes)


@pytest.fixture
def state() -> AssignmentTagState:
    return AssignmentTagState(
        owner_id="teacher-1",
        assignment_id="hw-1",
        status=AssignmentTagStatus.IDLE.value,
        dirty=False,
        manual_locked=False,
    )


@pytest.fixture
def merge_state() -> TagDictionaryMergeState:
    return TagDictionaryMergeState(
        owner_id="teacher-1", status=MergeStateStatus.IDLE.value, dirty=False
    )


@pytest.fixture
def cfg() -> PipelineConfig:
    return PipelineConfig(tag_quiet_minutes=5, tag_max_wait_minutes=30)


class TestRecordGradingEvent:
    def test_first_event_opens_window(self, state, cfg):
        record_grading_event(state, at(0), cfg)

        assert state.status == AssignmentTagStatus.PENDING.value
        assert state.dirty is True
        assert state.window_started_at == at(0)
        assert state.last_event_at == at(0)
        assert state.next_run_at == at(5)

    def test_later_event_slides_deadline_but_keeps_window(self, state, cfg):
        record_grading_event(state, at(0), cfg)
        record_grading_event(state, at(3), cfg)

        assert state.window_started_at == at(0)
        assert state.next_run_at == at(8)

    @pytest.mark.parametrize(
        "status",
        [
            AssignmentTagStatus.READY.value,
            AssignmentTagStatus.FAILED.value,
            AssignmentTagStatus.INSUFFICIENT_SAMPLES.value,
        ],
    )
    def test_event_after_settled_run_starts_fresh_window(self, state, cfg, status):
        state.status = status
        state.window_started_at = at(-120)

        record_grading_event(state, at(0), cfg)

        assert state.status == AssignmentTagStatus.PENDING.value
        assert state.window_started_at == at(0)

    def test_running_state_only_records_dirty(self, state, cfg):
        state.status = AssignmentTagStatus.RUNNING.value
        state.next_run_at = at(-1)

        record_grading_event(state, at(0), cfg)

        assert state.status == AssignmentTagStatus.RUNNING.value
        assert state.dirty is True
        assert state.last_event_at == at(0)
        assert state.next_run_at == at(-1)

    def test_locked_state_stays_ready(self, state, cfg):
        state.status = AssignmentTagStatus.READY.value
        state.manual_locked = True

        record_grading_event(state, at(0), cfg)

        assert state.status == AssignmentTagStatus.READY.value
        assert state.dirty is True
        assert state.next_run_at is None


class TestIsDue:
    def test_quiet_window(self, state, cfg):
        record_grading_event(state, at(0), cfg)

        assert not is_due(state, at(4), cfg)
        assert is_due(state, at(5), cfg)

    def test_max_wait_bounds_a_burst(self, state, cfg):
        # One event every three minutes keeps sliding the quiet deadline
        for minute in range(0, 30, 3):
            record_grading_event(state, at(minute), cfg)
        record_grading_event(state, at(29), cfg)

        assert state.next_run_at == at(34)
        assert not is_due(state, at(29), cfg)
        assert is_due(state, at(30), cfg)

    def test_missing_deadline_falls_back_to_last_event(self, state, cfg):
        state.status = AssignmentTagStatus.PENDING.value
        state.last_event_at = at(0)

        assert not is_due(state, at(4), cfg)
        assert is_due(state, at(5), cfg)

    def test_naive_database_values_are_treated_as_utc(self, state, cfg):
        state.status = AssignmentTagStatus.PENDING.value
        state.next_run_at = at(5).replace(tzinfo=None)

        assert is_due(state, at(5), cfg)

    def test_locked_and_running_are_never_due(self, state, cfg):
        record_grading_event(state, at(0), cfg)
        state.status = AssignmentTagStatus.RUNNING.value
        assert not is_due(state, at(60), cfg)

        state.status = AssignmentTagStatus.READY.value
        state.manual_locked = True
        assert not is_due(state, at(60), cfg)


class TestFinishRun:
    def test_clean_run_settles(self, state, cfg):
        state.status = AssignmentTagStatus.RUNNING.value

        finish_run(state, at(10), cfg, "ready", 6, "fake-model", "v1.0")

        assert state.status == AssignmentTagStatus.READY.value
        assert state.sample_count == 6
        assert state.last_generated_at == at(10)
        assert state.model == "fake-model"
        assert state.prompt_version == "v1.0"
        assert state.error_message is None
        assert state.dirty is False

    def test_event_during_run_reopens_window(self, state, cfg):
        state.status = AssignmentTagStatus.RUNNING.value
        record_grading_event(state, at(8), cfg)

        finish_run(state, at(10), cfg, "ready", 6, "fake-model", "v1.0")

        assert state.status == AssignmentTagStatus.PENDING.value
        assert state.window_started_at == at(8)
        assert state.next_run_at == at(13)
        assert state.dirty is False

    def test_not_generated_keeps_previous_generation(self, state, cfg):
        state.status = AssignmentTagStatus.RUNNING.value
        state.model = "old-model"

        finish_run(
            state,
            at(10),
            cfg,
            AssignmentTagStatus.INSUFFICIENT_SAMPLES.value,
            3,
            None,
            None,
            generated=False,
        )

        assert state.status == AssignmentTagStatus.INSUFFICIENT_SAMPLES.value
        assert state.last_generated_at is None
        assert state.model == "old-model"
        assert state.sample_count == 3

    def test_fail_run_truncates_error(self, state):
        fail_run(state, at(1), "x" * 5000)

        assert state.status == AssignmentTagStatus.FAILED.value
        assert len(state.error_message) == 2000


class TestManualOverride:
    def test_locked_override(self, state, cfg):
        record_grading_event(state, at(0), cfg)

        apply_manual_override(state, at(2), locked=True)

        assert state.status == AssignmentTagStatus.READY.value
        assert state.manual_locked is True
        assert state.dirty is False
        assert state.next_run_at is None
        assert state.model == "manual"
        assert state.prompt_version == "manual"

    def test_unlocked_override_can_be_rescheduled(self, state, cfg):
        apply_manual_override(state, at(0), locked=False)
        record_grading_event(state, at(1), cfg)

        assert state.status == AssignmentTagStatus.PENDING.value
        assert state.window_started_at == at(1)


class TestMergeStateMachine:
    def test_change_opens_window(self, merge_state):
        cfg = PipelineConfig(merge_quiet_minutes=10, merge_max_wait_minutes=60)

        record_dictionary_change(merge_state, at(0), cfg)
        record_dictionary_change(merge_state, at(5), cfg)

        assert merge_state.status == MergeStateStatus.PENDING.value
        assert merge_state.window_started_at == at(0)
        assert merge_state.next_run_at == at(15)
        assert not merge_is_due(merge_state, at(14), cfg)
        assert merge_is_due(merge_state, at(15), cfg)

    def test_max_wait(self, merge_state):
        cfg = PipelineConfig(merge_quiet_minutes=10, merge_max_wait_minutes=60)
        for minute in range(0, 60, 5):
            record_dictionary_change(merge_state, at(minute), cfg)

        assert not merge_is_due(merge_state, at(59), cfg)
        assert merge_is_due(merge_state, at(60), cfg)

    def test_pending_without_deadline_is_due(self, merge_state, cfg):
        merge_state.status = MergeStateStatus.PENDING.value
        assert merge_is_due(merge_state, at(0), cfg)

    def test_only_pending_is_due(self, merge_state, cfg):
        for status in (MergeStateStatus.IDLE, MergeStateStatus.RUNNING, MergeStateStatus.FAILED):
            merge_state.status = status.value
            assert not merge_is_due(merge_state, at(600), cfg)

    def test_change_during_run_marks_dirty(self, merge_state, cfg):
        merge_state.status = MergeStateStatus.RUNNING.value

        record_dictionary_change(merge_state, at(0), cfg)

        assert merge_state.status == MergeStateStatus.RUNNING.value
        assert merge_state.dirty is True

        finish_merge(merge_state, at(3), cfg, "fake-model", "v1.0")

        assert merge_state.status == MergeStateStatus.PENDING.value
        assert merge_state.window_started_at == at(3)
        assert merge_state.next_run_at == at(3 + cfg.merge_quiet_minutes)
        assert merge_state.last_merged_at == at(3)

    def test_clean_finish_goes_idle(self, merge_state, cfg):
        merge_state.status = MergeStateStatus.RUNNING.value
        merge_state.window_started_at = at(0)

        finish_merge(merge_state, at(3), cfg, None, None, merged=False)

        assert merge_state.status == MergeStateStatus.IDLE.value
        assert merge_state.window_started_at is None
        assert merge_state.next_run_at is None
        assert merge_state.last_merged_at is None

    def test_fail_merge(self, merge_state):
        fail_merge(merge_state, at(1), "boom")

        assert merge_state.status == MergeStateStatus.FAILED.value
        assert merge_state.error_message == "boom"
