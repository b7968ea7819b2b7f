from __future__ import annotations

from dataclasses import dataclass

from sitework.domain.state_machine import TaskStatus

FULL_PROGRESS = 100.0


@dataclass(frozen=True)
class ProgressProjection:
    progress: float
    status: TaskStatus
    progress_raised: bool
    ready_for_completion: bool


def clamp_progress(value: float) -> float:
    return max(0.0, min(FULL_PROGRESS, float(value)))


def project_progress(task_progress: float, task_status: TaskStatus, reported: float) -> ProgressProjection:
    """Project an approved update's reported progress onto its task.

    Progress only ever moves up. A task reaching full progress becomes
    ``APPROVED`` (ready for completion) unless it is already completed.
    """
    current = clamp_progress(task_progress)
    candidate = clamp_progress(reported)
    raised = candidate > current
    progress = candidate if raised else current

    status = task_status
    ready = False
    if progress >= FULL_PROGRESS and task_status not in {TaskStatus.COMPLETED, TaskStatus.APPROVED}:
        status = TaskStatus.APPROVED
        ready = True
    return ProgressProjection(progress=progress, status=status, progress_raised=raised, ready_for_completion=ready)


def submission_task_status(task_status: TaskStatus, reported: float) -> TaskStatus:
    if clamp_progress(reported) >= FULL_PROGRESS and task_status not in {
        TaskStatus.COMPLETED,
        TaskStatus.APPROVED,
    }:
        return TaskStatus.UNDER_REVIEW
    return task_status
