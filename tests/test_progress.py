from __future__ import annotations

import itertools

from sitework.domain.progress import project_progress, submission_task_status
from sitework.domain.state_machine import TaskStatus


def test_progress_is_raised_to_reported_value() -> None:
    projection = project_progress(20.0, TaskStatus.IN_PROGRESS, 45.0)
    assert projection.progress == 45.0
    assert projection.progress_raised
    assert projection.status == TaskStatus.IN_PROGRESS
    assert not projection.ready_for_completion


def test_lower_report_never_decreases_progress() -> None:
    projection = project_progress(60.0, TaskStatus.IN_PROGRESS, 30.0)
    assert projection.progress == 60.0
    assert not projection.progress_raised


def test_progress_is_monotonic_regardless_of_order() -> None:
    reports = [10.0, 70.0, 40.0, 90.0, 55.0]
    for ordering in itertools.permutations(reports):
        progress = 0.0
        status = TaskStatus.IN_PROGRESS
        history = []
        for reported in ordering:
            projection = project_progress(progress, status, reported)
            assert projection.progress >= progress
            progress, status = projection.progress, projection.status
            history.append(progress)
        assert progress == max(reports)
        assert history == sorted(history)


def test_full_progress_marks_task_ready_for_completion() -> None:
    projection = project_progress(80.0, TaskStatus.UNDER_REVIEW, 100.0)
    assert projection.progress == 100.0
    assert projection.status == TaskStatus.APPROVED
    assert projection.ready_for_completion


def test_completed_task_keeps_its_status() -> None:
    projection = project_progress(100.0, TaskStatus.COMPLETED, 100.0)
    assert projection.status == TaskStatus.COMPLETED
    assert not projection.ready_for_completion


def test_submission_at_full_progress_moves_task_under_review() -> None:
    assert submission_task_status(TaskStatus.IN_PROGRESS, 100.0) == TaskStatus.UNDER_REVIEW
    assert submission_task_status(TaskStatus.IN_PROGRESS, 99.5) == TaskStatus.IN_PROGRESS
    assert submission_task_status(TaskStatus.COMPLETED, 100.0) == TaskStatus.COMPLETED
