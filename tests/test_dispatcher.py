import asyncio
import threading

import pytest

from pickup_audit.audit.dispatcher import BatchingDispatcher, SinkConfig
from tests.conftest import FailingSink, RecordingSink, make_record, wait_until


@pytest.mark.asyncio
async def test_partial_batch_waits_for_timeout(recording_sink: RecordingSink):
    dispatcher = BatchingDispatcher([SinkConfig(recording_sink, batch_size=3, timeout=0.3)])
    await dispatcher.start()

    dispatcher.log(make_record("first"))
    dispatcher.log(make_record("second"))
    await asyncio.sleep(0.1)
    assert recording_sink.batches == []

    assert await wait_until(lambda: recording_sink.sizes == [2], timeout=1.0)
    assert recording_sink.messages == ["first", "second"]

    await dispatcher.shutdown()
    assert recording_sink.sizes == [2]


@pytest.mark.asyncio
async def test_full_batches_flush_without_waiting_for_timer(recording_sink: RecordingSink):
    dispatcher = BatchingDispatcher([SinkConfig(recording_sink, batch_size=3, timeout=10.0)])
    await dispatcher.start()

    for i in range(7):
        dispatcher.log(make_record(f"m{i}"))

    assert await wait_until(lambda: recording_sink.sizes == [3, 3], timeout=0.5)
    await asyncio.sleep(0.05)
    assert recording_sink.sizes == [3, 3]

    await dispatcher.shutdown()
    assert recording_sink.sizes == [3, 3, 1]
    assert recording_sink.messages == [f"m{i}" for i in range(7)]


@pytest.mark.asyncio
async def test_timeout_flush_then_immediate_size_flush(recording_sink: RecordingSink):
    dispatcher = BatchingDispatcher([SinkConfig(recording_sink, batch_size=3, timeout=0.5)])
    await dispatcher.start()

    dispatcher.log(make_record("a"))
    dispatcher.log(make_record("b"))
    await asyncio.sleep(0.7)
    assert recording_sink.sizes == [2]

    # The timer was re-armed at the first flush; a full batch must not wait for it.
    for message in ("c", "d", "e"):
        dispatcher.log(make_record(message))
    assert await wait_until(lambda: recording_sink.sizes == [2, 3], timeout=0.2)

    await dispatcher.shutdown()
    assert recording_sink.messages == ["a", "b", "c", "d", "e"]


@pytest.mark.asyncio
async def test_shutdown_flushes_partial_batch_and_is_idempotent(recording_sink: RecordingSink):
    dispatcher = BatchingDispatcher([SinkConfig(recording_sink, batch_size=10, timeout=30.0)])
    await dispatcher.start()
    dispatcher.log(make_record("pending"))

    await dispatcher.shutdown()
    assert recording_sink.sizes == [1]

    await dispatcher.shutdown()
    assert recording_sink.sizes == [1]
    assert not dispatcher.running


@pytest.mark.asyncio
async def test_shutdown_after_everything_flushed_sends_no_batches(recording_sink: RecordingSink):
    dispatcher = BatchingDispatcher([SinkConfig(recording_sink, batch_size=2, timeout=30.0)])
    await dispatcher.start()
    dispatcher.log(make_record("a"))
    dispatcher.log(make_record("b"))
    assert await wait_until(lambda: recording_sink.sizes == [2])

    await dispatcher.shutdown()
    assert recording_sink.sizes == [2]


@pytest.mark.asyncio
async def test_full_queue_drops_without_raising(recording_sink: RecordingSink):
    dispatcher = BatchingDispatcher(
        [SinkConfig(recording_sink, batch_size=5, timeout=30.0, queue_size=2)]
    )

    # Not started yet: records are buffered until the queue is full.
    for i in range(3):
        dispatcher.log(make_record(f"m{i}"))
    assert dispatcher.dropped == 1

    await dispatcher.start()
    await dispatcher.shutdown()
    assert recording_sink.messages == ["m0", "m1"]


@pytest.mark.asyncio
async def test_shutdown_without_start_flushes_buffered_records(recording_sink: RecordingSink):
    dispatcher = BatchingDispatcher([SinkConfig(recording_sink, batch_size=5, timeout=30.0)])
    dispatcher.log(make_record("early"))

    await dispatcher.shutdown()
    assert recording_sink.messages == ["early"]


@pytest.mark.asyncio
async def test_failing_sink_does_not_affect_other_sinks(recording_sink: RecordingSink):
    failing = FailingSink()
    dispatcher = BatchingDispatcher(
        [
            SinkConfig(failing, batch_size=2, timeout=30.0, name="broken"),
            SinkConfig(recording_sink, batch_size=2, timeout=30.0, name="recording"),
        ]
    )
    await dispatcher.start()
    for i in range(4):
        dispatcher.log(make_record(f"m{i}"))

    assert await wait_until(lambda: recording_sink.sizes == [2, 2])
    await dispatcher.shutdown()

    assert failing.calls == 2
    stats = dispatcher.stats()
    assert stats["broken"]["failed_batches"] == 2
    assert stats["recording"]["flushed_batches"] == 2


@pytest.mark.asyncio
async def test_log_from_worker_threads(recording_sink: RecordingSink):
    dispatcher = BatchingDispatcher([SinkConfig(recording_sink, batch_size=4, timeout=0.2)])
    await dispatcher.start()

    def produce(prefix: str) -> None:
        for i in range(5):
            dispatcher.log(make_record(f"{prefix}-{i}"))

    threads = [threading.Thread(target=produce, args=(name,)) for name in ("a", "b")]
    for thread in threads:
        thread.start()
    await asyncio.to_thread(lambda: [thread.join() for thread in threads])

    await dispatcher.shutdown()
    messages = recording_sink.messages
    assert sorted(messages) == sorted([f"a-{i}" for i in range(5)] + [f"b-{i}" for i in range(5)])
    # Per-producer order survives batching.
    assert [m for m in messages if m.startswith("a-")] == [f"a-{i}" for i in range(5)]


@pytest.mark.asyncio
async def test_log_after_shutdown_is_rejected(recording_sink: RecordingSink):
    dispatcher = BatchingDispatcher([SinkConfig(recording_sink, batch_size=1, timeout=1.0)])
    await dispatcher.start()
    await dispatcher.shutdown()

    dispatcher.log(make_record("late"))
    assert dispatcher.rejected == 1
    assert recording_sink.batches == []

    with pytest.raises(RuntimeError):
        await dispatcher.start()


@pytest.mark.asyncio
async def test_handoff_landing_after_workers_exit_is_rejected(recording_sink: RecordingSink):
    dispatcher = BatchingDispatcher([SinkConfig(recording_sink, batch_size=1, timeout=1.0)])
    await dispatcher.start()
    await dispatcher.shutdown()

    # Same path as a call_soon_threadsafe callback scheduled before shutdown.
    dispatcher._enqueue(make_record("straggler"))

    assert dispatcher.rejected == 1
    assert dispatcher.stats()[dispatcher.sink_names[0]]["queued"] == 0
    assert recording_sink.messages == []


@pytest.mark.asyncio
async def test_cancelled_worker_flushes_partial_batch(recording_sink: RecordingSink):
    dispatcher = BatchingDispatcher([SinkConfig(recording_sink, batch_size=10, timeout=30.0)])
    await dispatcher.start()
    dispatcher.log(make_record("in-flight"))
    await asyncio.sleep(0.05)

    worker_task = dispatcher._workers[0].task
    worker_task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await worker_task

    assert recording_sink.messages == ["in-flight"]


@pytest.mark.asyncio
async def test_context_manager_runs_lifecycle(recording_sink: RecordingSink):
    async with BatchingDispatcher([SinkConfig(recording_sink, batch_size=5, timeout=30.0)]) as d:
        assert d.running
        d.log(make_record("x"))
    assert recording_sink.messages == ["x"]


@pytest.mark.parametrize(
    "kwargs",
    [{"batch_size": 0}, {"timeout": 0}, {"queue_size": 0}],
)
def test_sink_config_rejects_invalid_values(recording_sink: RecordingSink, kwargs):
    with pytest.raises(ValueError):
        SinkConfig(recording_sink, **kwargs)
