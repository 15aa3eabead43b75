import asyncio

import pytest

from evalrunner.events import EventBus, topic_matches


@pytest.mark.parametrize(
    "pattern, name, expected",
    [
        ("*", "job.added", True),
        ("job.*", "job.added", True),
        ("job.*", "job.bulk.added", True),
        ("job.*", "jobs.added", False),
        ("job.added", "job.added", True),
        ("job.added", "job.active", False),
    ],
)
def test_topic_matches(pattern, name, expected):
    assert topic_matches(pattern, name) is expected


@pytest.mark.asyncio
async def test_publish_fans_out_to_matching_subscribers(events):
    jobs = events.subscribe("job.*")
    everything = events.subscribe()

    events.publish("job.added", {"job_id": "1"})
    events.publish("batch.started", {"batch_job_id": "b"})

    assert [e.name for e in jobs.drain()] == ["job.added"]
    assert [e.name for e in everything.drain()] == ["job.added", "batch.started"]


@pytest.mark.asyncio
async def test_full_subscriber_drops_without_blocking_others():
    bus = EventBus(queue_size=2)
    slow = bus.subscribe("x.*")
    roomy = bus.subscribe("x.*", maxsize=10)

    for i in range(4):
        bus.publish("x.tick", i)

    assert slow.dropped == 2
    assert [e.payload for e in slow.drain()] == [0, 1]
    assert [e.payload for e in roomy.drain()] == [0, 1, 2, 3]


@pytest.mark.asyncio
async def test_closed_subscription_stops_receiving(events):
    sub = events.subscribe("job.*")
    sub.close()

    events.publish("job.added")

    assert sub.drain() == []


@pytest.mark.asyncio
async def test_listen_runs_sync_and_async_handlers(events):
    seen = []
    done = asyncio.Event()

    def on_sync(event):
        seen.append(("sync", event.name))

    async def on_async(event):
        seen.append(("async", event.name))
        done.set()

    events.listen("schedule.*", on_sync)
    events.listen("schedule.*", on_async)
    events.publish("schedule.run.started")

    await asyncio.wait_for(done.wait(), timeout=1)
    await asyncio.sleep(0)
    assert sorted(seen) == [("async", "schedule.run.started"), ("sync", "schedule.run.started")]
    await events.shutdown()


@pytest.mark.asyncio
async def test_failing_handler_keeps_listening(events):
    calls = []
    second = asyncio.Event()

    def flaky(event):
        calls.append(event.payload)
        if event.payload == 1:
            raise RuntimeError("handler bug")
        second.set()

    events.listen("t", flaky)
    events.publish("t", 1)
    events.publish("t", 2)

    await asyncio.wait_for(second.wait(), timeout=1)
    assert calls == [1, 2]
    await events.shutdown()


@pytest.mark.asyncio
async def test_shutdown_cancels_listeners(events):
    task = events.listen("*", lambda e: None)
    sub = events.subscribe("*")

    await events.shutdown()

    assert task.done()
    events.publish("job.added")
    assert sub.drain() == []
