import logging

import pytest

from campaign_dispatch.batching import campaigns_in, fetch_due_batch, group_by_account
from campaign_dispatch.models import MessageStatus, QueuedMessage
from campaign_dispatch.outcome import MAX_ERROR_LENGTH, OutcomeRecorder, sanitize_reason


def test_sanitize_reason_collapses_and_truncates():
    assert sanitize_reason("550\r\n  mailbox\x00 unavailable\t") == "550 mailbox unavailable"
    assert sanitize_reason(None) == "unknown error"
    long = sanitize_reason("x" * 5000)
    assert len(long) == MAX_ERROR_LENGTH
    assert long.endswith("...")


@pytest.mark.asyncio
async def test_recorder_writes_terminal_states(persistence, make_message):
    await persistence.insert_messages([make_message("m1"), make_message("m2")])
    recorder = OutcomeRecorder(persistence, clock=lambda: 1234.5)
    msgs = [QueuedMessage(**row) for row in await persistence.fetch_pending(10)]

    sent = await recorder.record_sent(msgs[0], "pid-1")
    failed = await recorder.record_failed(msgs[1], "boom\nbang")

    assert sent.status == MessageStatus.SENT and sent.persisted
    assert failed.error == "boom bang"
    row = await persistence.get_message("m1")
    assert (row["status"], row["sent_ts"], row["attempt_count"]) == ("sent", 1234, 1)
    row = await persistence.get_message("m2")
    assert (row["status"], row["error"]) == ("failed", "boom bang")


@pytest.mark.asyncio
async def test_recorder_logs_delivery_activity(persistence, make_message, caplog):
    await persistence.insert_messages([make_message("m1")])
    recorder = OutcomeRecorder(persistence, log_delivery_activity=True, logger=logging.getLogger("test.outcome"))
    msg = QueuedMessage(**(await persistence.fetch_pending(1))[0])
    with caplog.at_level(logging.INFO, logger="test.outcome"):
        await recorder.record_sent(msg)
    assert "Delivery succeeded for message m1" in caplog.text


@pytest.mark.asyncio
async def test_fetch_and_group(persistence, make_message):
    await persistence.insert_messages(
        [
            make_message("b1", account_id="b", campaign_id="c2", enqueued_ts=1),
            make_message("a1", account_id="a", enqueued_ts=2),
            make_message("b2", account_id="b", enqueued_ts=3),
        ]
    )
    batch = await fetch_due_batch(persistence, limit=50)
    groups = group_by_account(batch)
    assert list(groups) == ["b", "a"]
    assert [m.id for m in groups["b"]] == ["b1", "b2"]
    assert campaigns_in(batch) == ["c2", "camp1"]
