from __future__ import annotations

import threading

import allure
import pytest

from dispatch_coordinator.coordination.fanout import NotificationFanout
from dispatch_coordinator.coordination.models import CoordinationEvent, EventType

pytestmark = [
    allure.epic("Coordination Engine"),
    allure.feature("Real-time Fanout"),
]


def _event(task_id: str = "task-1") -> CoordinationEvent:
    return CoordinationEvent(type=EventType.TASK_UPDATED.value, task_id=task_id)


def test_every_connection_of_a_user_receives_the_event() -> None:
    fanout = NotificationFanout()
    laptop = fanout.subscribe("sarah")
    phone = fanout.subscribe("sarah")
    other = fanout.subscribe("jordan")

    delivered = fanout.deliver(["sarah"], _event())

    assert delivered == 2
    assert [event.task_id for event in laptop.drain()] == ["task-1"]
    assert [event.task_id for event in phone.drain()] == ["task-1"]
    assert other.drain() == []
    assert fanout.connection_count("sarah") == 2
    assert fanout.connection_count() == 3


def test_duplicate_and_empty_recipients_are_delivered_once() -> None:
    fanout = NotificationFanout()
    connection = fanout.subscribe("sarah")

    delivered = fanout.deliver(["sarah", None, "sarah", ""], _event())

    assert delivered == 1
    assert len(connection.drain()) == 1


def test_events_keep_publish_order_per_connection() -> None:
    fanout = NotificationFanout()
    connection = fanout.subscribe("sarah")

    for index in range(5):
        fanout.deliver(["sarah"], _event(f"task-{index}"))

    assert [event.task_id for event in connection] == [f"task-{index}" for index in range(5)]


def test_closed_connection_stops_receiving() -> None:
    fanout = NotificationFanout()
    with fanout.subscribe("sarah") as connection:
        fanout.deliver(["sarah"], _event("before"))

    assert fanout.deliver(["sarah"], _event("after")) == 0
    assert [event.task_id for event in connection.drain()] == ["before"]
    assert fanout.connection_count("sarah") == 0
    connection.close()


def test_full_queue_drops_event_without_blocking(caplog: pytest.LogCaptureFixture) -> None:
    fanout = NotificationFanout(queue_size=2)
    slow = fanout.subscribe("sarah")
    fast = fanout.subscribe("jordan")

    results = []
    with caplog.at_level("WARNING"):
        for index in range(3):
            results.append(fanout.deliver(["sarah", "jordan"], _event(f"task-{index}")))
            fast.drain()

    assert results == [2, 2, 1]
    assert fanout.dropped == 1
    assert [event.task_id for event in slow.drain()] == ["task-0", "task-1"]
    assert "Dropped task:updated event for task task-2" in caplog.text


def test_dropped_count_is_exact_under_concurrent_delivery() -> None:
    fanout = NotificationFanout(queue_size=1)
    fanout.subscribe("sarah")
    fanout.deliver(["sarah"], _event("fill"))
    start = threading.Barrier(8)

    def _flood() -> None:
        start.wait()
        for index in range(250):
            fanout.deliver(["sarah"], _event(f"task-{index}"))

    threads = [threading.Thread(target=_flood) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert fanout.dropped == 8 * 250


def test_get_waits_for_event_from_another_thread() -> None:
    fanout = NotificationFanout()
    connection = fanout.subscribe("sarah")

    timer = threading.Timer(0.05, lambda: fanout.deliver(["sarah"], _event("late")))
    timer.start()
    try:
        event = connection.get(timeout=5)
    finally:
        timer.cancel()

    assert event is not None
    assert event.task_id == "late"
    assert connection.get(timeout=0.01) is None


def test_publish_task_reaches_requester_and_assignee(controller, fanout, make_executor, new_task):
    make_executor("sarah")
    requester = fanout.subscribe("requester")
    assignee = fanout.subscribe("sarah")
    bystander = fanout.subscribe("alex")

    task = controller.create_task(new_task(), assignee_id="sarah")

    created = requester.drain()
    assert [event.type for event in created] == ["task:created"]
    assert created[0].payload["task"]["assigneeId"] == "sarah"
    assert created[0].payload["assignment"]["executorId"] == "sarah"
    assert created[0].to_dict()["taskId"] == task.task_id
    assert len(assignee.drain()) == 1
    assert bystander.drain() == []


def test_queue_size_must_be_positive() -> None:
    with pytest.raises(ValueError):
        NotificationFanout(queue_size=0)
    with pytest.raises(ValueError):
        NotificationFanout().subscribe("")
