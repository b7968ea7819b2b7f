from __future__ import annotations

import logging

import pytest
from sqlmodel import Session, SQLModel, create_engine, select

from sitework.domain.models import EventEnvelope, EventRecord
from sitework.infra.events import EventBus


def test_record_commits_with_caller_and_dispatch_runs_after() -> None:
    engine = create_engine("sqlite:///:memory:")
    SQLModel.metadata.create_all(engine)

    bus = EventBus()
    seen: list[str] = []

    def handler(event: EventEnvelope) -> None:
        seen.append(event.event_id)

    bus.subscribe("task_update.reviewed", handler)
    event = EventEnvelope(
        event_type="task_update.reviewed",
        organization_id="org-a",
        actor_id="admin-1",
        payload={"update_id": "update-1"},
    )

    with Session(engine) as session:
        bus.record(session, event)
        session.commit()

    assert seen == []

    with Session(engine) as session:
        stored = session.exec(select(EventRecord)).all()
    assert len(stored) == 1
    assert stored[0].event_id == event.event_id
    assert stored[0].organization_id == "org-a"

    bus.dispatch(event)
    assert seen == [event.event_id]


def test_rolled_back_record_leaves_no_row() -> None:
    engine = create_engine("sqlite:///:memory:")
    SQLModel.metadata.create_all(engine)
    bus = EventBus()
    event = EventEnvelope(event_type="task.completed", organization_id="org-a", payload={"task_id": "task-1"})

    with Session(engine) as session:
        bus.record(session, event)
        session.rollback()

    with Session(engine) as session:
        assert session.exec(select(EventRecord)).all() == []


def test_wildcard_subscriber_sees_every_event() -> None:
    bus = EventBus()
    seen: list[str] = []
    bus.subscribe("*", lambda event: seen.append(event.event_type))

    bus.dispatch(EventEnvelope(event_type="task.completed", organization_id="org-a", payload={}))
    bus.dispatch(EventEnvelope(event_type="task_update.submitted", organization_id="org-a", payload={}))

    assert seen == ["task.completed", "task_update.submitted"]


def test_failing_subscriber_is_logged_and_others_still_run(caplog: pytest.LogCaptureFixture) -> None:
    bus = EventBus()
    seen: list[str] = []

    def broken(_event: EventEnvelope) -> None:
        raise RuntimeError("subscriber down")

    bus.subscribe("task.completed", broken)
    bus.subscribe("task.completed", lambda event: seen.append(event.event_id))
    event = EventEnvelope(event_type="task.completed", organization_id="org-a", payload={})

    with caplog.at_level(logging.ERROR, logger="sitework.infra.events"):
        bus.dispatch(event)

    assert seen == [event.event_id]
    assert "event subscriber failed for task.completed" in caplog.text
