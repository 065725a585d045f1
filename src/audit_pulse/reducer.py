"""
Pure step-progress reducer.

Folds progress, complete and error events into an ordered tuple of
StageState records for one job. The reducer never regresses a completed
stage, never lowers a stage's progress, and treats an errored or fully
completed stage list as terminal: every later event is a no-op.
"""

from typing import Any, Iterator, Optional, Sequence

from pydantic import BaseModel, ConfigDict

from audit_pulse.events import AuditEvent, CompleteEvent, ErrorEvent, ProgressEvent
from audit_pulse.stages import AUDIT_STAGES, StageDescriptor, StageState, StageStatus

Stages = tuple[StageState, ...]


def initial_stages(descriptors: Sequence[StageDescriptor] = AUDIT_STAGES) -> Stages:
    """Return a fresh all-pending stage list."""
    return tuple(StageState(stage=descriptor) for descriptor in descriptors)


def is_terminal(stages: Stages) -> bool:
    """True once a stage has errored or every stage has completed."""
    if any(state.status == StageStatus.ERROR for state in stages):
        return True
    return bool(stages) and all(state.status == StageStatus.COMPLETED for state in stages)


def running_index(stages: Stages) -> Optional[int]:
    """Index of the running stage, if any."""
    for index, state in enumerate(stages):
        if state.status == StageStatus.RUNNING:
            return index
    return None


def apply(stages: Stages, event: AuditEvent) -> Stages:
    """
    Apply one event and return the new stage list.

    Args:
        stages: Current stage states (not modified)
        event: Progress, complete or error event

    Returns:
        New stage tuple. The input tuple is returned unchanged when the
        event is absorbed (terminal state or out-of-range step).
    """
    if not stages or is_terminal(stages):
        return stages
    if isinstance(event, ProgressEvent):
        return _apply_progress(stages, event)
    if isinstance(event, CompleteEvent):
        return tuple(
            state.model_copy(update={"status": StageStatus.COMPLETED, "progress": 100})
            for state in stages
        )
    if isinstance(event, ErrorEvent):
        return _apply_error(stages, event)
    raise TypeError(f"Unsupported event type: {type(event).__name__}")


def _apply_progress(stages: Stages, event: ProgressEvent) -> Stages:
    step = event.current_step
    if step < 0 or step >= len(stages):
        return stages
    incoming = min(100, max(0, event.step_progress))

    updated = []
    for index, state in enumerate(stages):
        if state.status != StageStatus.COMPLETED:
            if index < step:
                state = state.model_copy(update={"status": StageStatus.COMPLETED, "progress": 100})
            elif index == step:
                state = state.model_copy(update={
                    "status": StageStatus.RUNNING,
                    "progress": max(state.progress, incoming),
                })
        updated.append(state)
    return tuple(updated)


def _apply_error(stages: Stages, event: ErrorEvent) -> Stages:
    index = event.step
    if index is None or not 0 <= index < len(stages):
        index = running_index(stages)
    if index is None:
        # Nothing running yet: the failure belongs to the first unfinished stage
        index = next(i for i, s in enumerate(stages) if s.status != StageStatus.COMPLETED)

    return tuple(
        state.model_copy(update={"status": StageStatus.ERROR, "progress": 0}) if i == index else state
        for i, state in enumerate(stages)
    )


def progress_schedule(step: int = 10) -> tuple[int, ...]:
    """Progress values a simulated stage passes through: 0, step, ..., 100."""
    if step <= 0:
        raise ValueError("step must be positive")
    values = list(range(0, 101, step))
    if values[-1] != 100:
        values.append(100)
    return tuple(values)


def simulated_events(
    descriptors: Sequence[StageDescriptor] = AUDIT_STAGES,
    step: int = 10,
    result: Optional[dict[str, Any]] = None,
) -> Iterator[AuditEvent]:
    """
    Yield the deterministic simulated progression.

    Each stage is stepped through progress_schedule(step) in order; the next
    stage's first event implicitly completes the previous one. A final
    CompleteEvent closes the job.
    """
    schedule = progress_schedule(step)
    for index, descriptor in enumerate(descriptors):
        for progress in schedule:
            yield ProgressEvent(
                current_step=index,
                step_progress=progress,
                message=descriptor.description,
            )
    yield CompleteEvent(result=result if result is not None else {"simulated": True})


def simulated_tick_count(descriptors: Sequence[StageDescriptor] = AUDIT_STAGES, step: int = 10) -> int:
    """Number of events (one per tick) simulated_events() produces."""
    return len(descriptors) * len(progress_schedule(step)) + 1


class JobProgressView(BaseModel):
    """Aggregate view derived from a stage list."""
    model_config = ConfigDict(frozen=True)

    stages: Stages
    status: StageStatus
    current_step: int
    overall_progress: float
    factors_analyzed: int
    total_factors: int

    @property
    def is_terminal(self) -> bool:
        return self.status in (StageStatus.COMPLETED, StageStatus.ERROR)

    @classmethod
    def from_stages(cls, stages: Stages) -> "JobProgressView":
        statuses = [state.status for state in stages]

        if StageStatus.ERROR in statuses:
            status = StageStatus.ERROR
            current = statuses.index(StageStatus.ERROR)
        elif stages and all(s == StageStatus.COMPLETED for s in statuses):
            status = StageStatus.COMPLETED
            current = len(stages) - 1
        elif StageStatus.RUNNING in statuses:
            status = StageStatus.RUNNING
            current = statuses.index(StageStatus.RUNNING)
        else:
            status = StageStatus.RUNNING if StageStatus.COMPLETED in statuses else StageStatus.PENDING
            current = sum(1 for s in statuses if s == StageStatus.COMPLETED)

        overall = sum(state.progress for state in stages) / len(stages) if stages else 0.0

        return cls(
            stages=stages,
            status=status,
            current_step=current,
            overall_progress=overall,
            factors_analyzed=sum(state.stage.factors * state.progress for state in stages) // 100,
            total_factors=sum(state.stage.factors for state in stages),
        )
