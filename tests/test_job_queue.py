import asyncio
import json

import pytest

from api.services.job_queue import JobQueue


@pytest.fixture
def queue(fake_redis):
    return JobQueue(fake_redis, queue_name="test_imports", visibility_timeout=300, poll_interval=0.01)


@pytest.mark.asyncio
async def test_send_then_receive_leases_the_message(queue, fake_redis):
    message_id = await queue.send('{"hello": "world"}', attributes={"jobType": "csv_processing"})

    messages = await queue.receive(max_messages=1, wait_seconds=1)

    assert len(messages) == 1
    message = messages[0]
    assert message.message_id == message_id
    assert message.body == '{"hello": "world"}'
    assert message.attributes == {"jobType": "csv_processing"}
    assert message.receive_count == 1
    assert message.receipt_handle.startswith(message_id)

    stats = await queue.get_queue_stats()
    assert stats == {"queue": "test_imports", "ready": 0, "in_flight": 1}
    assert message.receipt_handle in fake_redis.hashes["test_imports:leases"]


@pytest.mark.asyncio
async def test_receive_on_empty_queue_returns_nothing(queue):
    assert await queue.receive(wait_seconds=0) == []
    assert await queue.receive(wait_seconds=1) == []


@pytest.mark.asyncio
async def test_messages_are_delivered_in_send_order(queue):
    await queue.send("first")
    await queue.send("second")
    await queue.send("third")

    batch = await queue.receive(max_messages=2, wait_seconds=0)
    assert [message.body for message in batch] == ["first", "second"]

    rest = await queue.receive(max_messages=5, wait_seconds=0)
    assert [message.body for message in rest] == ["third"]


@pytest.mark.asyncio
async def test_delete_acknowledges_once(queue):
    await queue.send("job")
    message = (await queue.receive(wait_seconds=0))[0]

    assert await queue.delete(message.receipt_handle) is True
    assert await queue.delete(message.receipt_handle) is False

    assert await queue.get_queue_stats() == {"queue": "test_imports", "ready": 0, "in_flight": 0}


@pytest.mark.asyncio
async def test_unacknowledged_message_is_redelivered_after_visibility_timeout(queue, fake_redis):
    await queue.send("job")
    first = (await queue.receive(wait_seconds=0))[0]

    # Nothing is visible while the lease is live.
    assert await queue.receive(wait_seconds=0) == []

    fake_redis.zsets["test_imports:inflight"][first.receipt_handle] = 0
    second = (await queue.receive(wait_seconds=0))[0]

    assert second.message_id == first.message_id
    assert second.receipt_handle != first.receipt_handle
    assert second.receive_count == 2

    # The lapsed handle can no longer acknowledge; the new one can.
    assert await queue.delete(first.receipt_handle) is False
    assert await queue.delete(second.receipt_handle) is True


@pytest.mark.asyncio
async def test_expired_lease_goes_ahead_of_newer_messages(queue, fake_redis):
    await queue.send("old")
    leased = (await queue.receive(wait_seconds=0))[0]
    await queue.send("new")

    fake_redis.zsets["test_imports:inflight"][leased.receipt_handle] = 0
    restored = await queue.restore_expired()

    assert restored == 1
    nxt = (await queue.receive(wait_seconds=0))[0]
    assert nxt.body == "old"


@pytest.mark.asyncio
async def test_envelope_is_json(queue, fake_redis):
    await queue.send("payload", attributes={"jobType": "csv_processing"})
    envelope = json.loads(fake_redis.lists["test_imports:ready"][0])

    assert envelope["body"] == "payload"
    assert envelope["receive_count"] == 0
    assert "sent_at" in envelope


@pytest.mark.asyncio
async def test_long_poll_picks_up_a_message_sent_while_waiting(queue):
    async def send_later():
        await asyncio.sleep(0.05)
        await queue.send("late")

    sender = asyncio.create_task(send_later())
    messages = await queue.receive(wait_seconds=2)
    await sender

    assert [message.body for message in messages] == ["late"]


@pytest.mark.asyncio
async def test_restore_moves_lease_back_in_one_step(queue, fake_redis):
    await queue.send("job")
    leased = (await queue.receive(wait_seconds=0))[0]
    fake_redis.zsets["test_imports:inflight"][leased.receipt_handle] = 0

    assert await queue.restore_expired() == 1

    assert leased.receipt_handle not in fake_redis.hashes["test_imports:leases"]
    assert leased.receipt_handle not in fake_redis.zsets["test_imports:inflight"]
    assert json.loads(fake_redis.lists["test_imports:ready"][0])["receive_count"] == 1
    assert await queue.restore_expired() == 0
