from __future__ import annotations

import json

import pytest

from smartmeet_pipeline.common.errors import QueueUnavailableError
from smartmeet_pipeline.queue.retry import requeue_with_backoff
from smartmeet_pipeline.queue.task_queue import TaskQueue
from smartmeet_pipeline.queue.tasks import Task, process_job_task


def _queue(fake_redis, clock, **kwargs) -> TaskQueue:
    return TaskQueue(fake_redis, name="q_test", clock=clock, **kwargs)


def test_enqueue_dequeue_is_fifo_and_stamps_created_at(fake_redis, clock) -> None:
    q = _queue(fake_redis, clock)
    first = process_job_task("job_a")
    second = process_job_task("job_b")

    assert q.enqueue(first) is True
    assert q.enqueue(second) is True
    assert q.length() == 2

    got = q.dequeue()
    assert got is not None
    assert got.id == first.id
    assert got.payload == {"jobId": "job_a"}
    assert got.created_at == clock()
    assert got.retries == 0
    assert q.dequeue().id == second.id
    assert q.dequeue() is None


def test_wire_format_keys(fake_redis, clock) -> None:
    q = _queue(fake_redis, clock)
    q.enqueue(Task(id="t1", type="PROCESS_JOB", payload={"jobId": "j"}))

    raw = json.loads(fake_redis.lists["q_test"][0])
    assert raw == {
        "id": "t1",
        "type": "PROCESS_JOB",
        "data": {"jobId": "j"},
        "createdAt": clock(),
        "retries": 0,
    }


def test_dead_letter_increments_retries_and_records_error(fake_redis, clock) -> None:
    q = _queue(fake_redis, clock)
    task = process_job_task("job_a")

    assert q.dead_letter(task, "boom") is True
    assert q.dead_letter_length() == 1
    assert q.length() == 0

    raw = json.loads(fake_redis.lists["q_test:dlq"][0])
    assert raw["retries"] == 1
    assert raw["error"] == "boom"


def test_malformed_entry_moves_to_dlq(fake_redis, clock) -> None:
    q = _queue(fake_redis, clock)
    fake_redis.rpush("q_test", "{not json")
    good = process_job_task("job_ok")
    q.enqueue(good)

    got = q.dequeue()
    assert got is not None
    assert got.id == good.id
    assert q.dead_letter_length() == 1
    parked = json.loads(fake_redis.lists["q_test:dlq"][0])
    assert parked["raw"] == "{not json"


def test_store_down_fail_open_returns_defaults(fake_redis, clock) -> None:
    q = _queue(fake_redis, clock)
    fake_redis.down = True

    assert q.enqueue(process_job_task("job_a")) is False
    assert q.dequeue() is None
    assert q.length() == 0
    assert q.dead_letter_length() == 0
    assert q.dead_letter(process_job_task("job_a"), "err") is False


def test_store_down_fail_closed_raises_on_enqueue(fake_redis, clock) -> None:
    q = _queue(fake_redis, clock, fail_open=False)
    fake_redis.down = True

    with pytest.raises(QueueUnavailableError):
        q.enqueue(process_job_task("job_a"))


def test_no_client_is_treated_as_unavailable(clock) -> None:
    q = TaskQueue(None, name="q_test", clock=clock)
    assert q.enqueue(process_job_task("job_a")) is False
    assert q.dequeue() is None


def test_requeue_with_backoff_then_dlq(fake_redis, clock) -> None:
    q = _queue(fake_redis, clock)
    task = process_job_task("job_a")
    sleeps: list[float] = []

    assert requeue_with_backoff(
        queue=q, task=task, error="e1", max_attempts=3, backoff_sec=2.0, sleep=sleeps.append
    )
    assert task.retries == 1
    assert task.last_error == "e1"
    assert q.length() == 1

    again = q.dequeue()
    assert requeue_with_backoff(
        queue=q, task=again, error="e2", max_attempts=3, backoff_sec=2.0, sleep=sleeps.append
    )
    assert sleeps == [2.0, 4.0]

    last = q.dequeue()
    assert last.retries == 2
    assert not requeue_with_backoff(
        queue=q, task=last, error="e3", max_attempts=3, backoff_sec=2.0, sleep=sleeps.append
    )
    assert q.length() == 0
    assert q.dead_letter_length() == 1
    parked = json.loads(fake_redis.lists["q_test:dlq"][0])
    assert parked["retries"] == 3
    assert parked["error"] == "e3"


def test_task_from_wire_rejects_missing_fields() -> None:
    with pytest.raises(KeyError):
        Task.from_wire({"type": "PROCESS_JOB"})
    with pytest.raises(ValueError):
        Task.from_wire({"id": "x", "type": "PROCESS_JOB", "data": "nope"})
