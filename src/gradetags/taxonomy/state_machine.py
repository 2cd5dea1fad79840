"""
Debounce state machines for assignment clustering and dictionary merges.

Both machines batch bursts of events behind a sliding quiet window and
bound the total deferral with a max-wait ceiling measured from the start
of the open window. The functions here mutate ORM rows in place; callers
own the transaction.

Assignment states::

    idle -> pending -> running -> ready | failed | insufficient_samples
                          |
                          +-> pending   (an event arrived during the run)

``manual_locked`` pins an assignment to ``ready`` and removes it from
scheduling until it is unlocked.
"""

from datetime import datetime
from typing import Optional

from gradetags.models.db import (
    AssignmentTagState,
    AssignmentTagStatus,
    MergeStateStatus,
    TagDictionaryMergeState,
)
from gradetags.taxonomy.config import PipelineConfig
from gradetags.utils.clock import add_minutes, ensure_utc, minutes_since

# Statuses with no open debounce window; an event starts a fresh one
WINDOW_CLOSED_STATUSES = frozenset(
    {
        AssignmentTagStatus.IDLE.value,
        AssignmentTagStatus.READY.value,
        AssignmentTagStatus.FAILED.value,
        AssignmentTagStatus.INSUFFICIENT_SAMPLES.value,
    }
)

SWEEP_STATUSES = (AssignmentTagStatus.PENDING.value,)
SWEEP_ALL_STATUSES = (
    AssignmentTagStatus.PENDING.value,
    AssignmentTagStatus.READY.value,
    AssignmentTagStatus.FAILED.value,
    AssignmentTagStatus.INSUFFICIENT_SAMPLES.value,
)


def record_grading_event(
    state: AssignmentTagState, now: datetime, config: PipelineConfig
) -> None:
    """
    Apply a "submission became graded" event.

    The event is always recorded (``dirty``, ``last_event_at``). A locked
    row stays ``ready``; a running row only keeps the dirty mark so the run
    reopens the window when it finishes. Otherwise the row becomes
    ``pending`` and the quiet deadline slides to ``now + quiet``; the window
    start is kept while a window is open.
    """
    state.dirty = True
    state.last_event_at = now

    if state.manual_locked:
        state.status = AssignmentTagStatus.READY.value
        return

    if state.status == AssignmentTagStatus.RUNNING.value:
        return

    if state.status in WINDOW_CLOSED_STATUSES or state.window_started_at is None:
        state.window_started_at = now
    state.status = AssignmentTagStatus.PENDING.value
    state.next_run_at = add_minutes(now, config.tag_quiet_minutes)


def is_due(state: AssignmentTagState, now: datetime, config: PipelineConfig) -> bool:
    """
    Whether a state should be picked by an unforced sweep.

    Due when the quiet deadline has passed (``last_event_at + quiet`` when
    no deadline is stored) or the window has been open for at least the
    max-wait ceiling. Locked and running rows are never due.
    """
    if state.manual_locked or state.status == AssignmentTagStatus.RUNNING.value:
        return False

    now = ensure_utc(now)
    next_run_at = ensure_utc(state.next_run_at)
    if next_run_at is None and state.last_event_at is not None:
        next_run_at = add_minutes(state.last_event_at, config.tag_quiet_minutes)
    if next_run_at is not None and now >= next_run_at:
        return True

    waited = minutes_since(state.window_started_at, now)
    return waited is not None and waited >= config.tag_max_wait_minutes


def finish_run(
    state: AssignmentTagState,
    now: datetime,
    config: PipelineConfig,
    status: str,
    sample_count: int,
    model: Optional[str],
    prompt_version: Optional[str],
    generated: bool = True,
) -> None:
    """
    Finalize a clean run.

    If an event arrived during the run the row goes back to ``pending``
    with a window reopened at the latest event; otherwise it settles on
    ``status`` (ready or insufficient_samples). ``generated`` is False when
    the run stopped before writing aggregates.
    """
    state.sample_count = sample_count
    if generated:
        state.last_generated_at = now
        state.model = model
        state.prompt_version = prompt_version
    state.error_message = None
    state.updated_at = now

    if state.dirty:
        last_event_at = state.last_event_at or now
        state.status = AssignmentTagStatus.PENDING.value
        state.window_started_at = last_event_at
        state.next_run_at = add_minutes(last_event_at, config.tag_quiet_minutes)
    else:
        state.status = status
    state.dirty = False


def fail_run(state: AssignmentTagState, now: datetime, error: str) -> None:
    """Mark a run failed; it is retried once it becomes due again."""
    state.status = AssignmentTagStatus.FAILED.value
    state.error_message = error[:2000]
    state.updated_at = now


def apply_manual_override(
    state: AssignmentTagState, now: datetime, locked: bool
) -> None:
    """Settle a state on manually supplied tags."""
    state.status = AssignmentTagStatus.READY.value
    state.manual_locked = locked
    state.dirty = False
    state.last_generated_at = now
    state.model = "manual"
    state.prompt_version = "manual"
    state.error_message = None
    state.updated_at = now
    if locked:
        state.next_run_at = None


def record_dictionary_change(
    state: TagDictionaryMergeState, now: datetime, config: PipelineConfig
) -> None:
    """
    Apply a "new dictionary labels" event to the owner's merge state.

    A running merge is only marked dirty; otherwise the state becomes
    ``pending`` with a sliding quiet deadline.
    """
    if state.status == MergeStateStatus.RUNNING.value:
        state.dirty = True
        return

    if state.status != MergeStateStatus.PENDING.value or state.window_started_at is None:
        state.window_started_at = now
    state.status = MergeStateStatus.PENDING.value
    state.next_run_at = add_minutes(now, config.merge_quiet_minutes)
    state.error_message = None
    state.updated_at = now


def merge_is_due(
    state: TagDictionaryMergeState, now: datetime, config: PipelineConfig
) -> bool:
    """Whether a pending merge state should run (no deadline means due)."""
    if state.status != MergeStateStatus.PENDING.value:
        return False

    now = ensure_utc(now)
    next_run_at = ensure_utc(state.next_run_at)
    if next_run_at is None or now >= next_run_at:
        return True

    waited = minutes_since(state.window_started_at, now)
    return waited is not None and waited >= config.merge_max_wait_minutes


def finish_merge(
    state: TagDictionaryMergeState,
    now: datetime,
    config: PipelineConfig,
    model: Optional[str],
    prompt_version: Optional[str],
    merged: bool = True,
) -> None:
    """
    Finalize a merge run (``merged=False`` for a skipped run).

    New labels that arrived during the run reopen the window.
    """
    if merged:
        state.last_merged_at = now
        state.model = model
        state.prompt_version = prompt_version
    state.error_message = None
    state.updated_at = now

    if state.dirty:
        state.status = MergeStateStatus.PENDING.value
        state.window_started_at = now
        state.next_run_at = add_minutes(now, config.merge_quiet_minutes)
    else:
        state.status = MergeStateStatus.IDLE.value
        state.window_started_at = None
        state.next_run_at = None
    state.dirty = False


def fail_merge(state: TagDictionaryMergeState, now: datetime, error: str) -> None:
    state.status = MergeStateStatus.FAILED.value
    state.error_message = error[:2000]
    state.updated_at = now
