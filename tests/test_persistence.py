import pytest


@pytest.mark.asyncio
async def test_account_roundtrip_keeps_counters_on_update(persistence):
    await persistence.add_account(
        {"id": "acme", "hourly_limit": 5, "daily_limit": 10, "smtp_host": "smtp.test", "smtp_port": 587}
    )
    assert await persistence.increment_send_counters("acme") is True
    await persistence.add_account({"id": "acme", "hourly_limit": 7, "smtp_host": "smtp2.test", "smtp_port": 25})

    acc = await persistence.get_account("acme")
    assert acc["hourly_limit"] == 7
    assert acc["daily_limit"] == 100
    assert acc["smtp_host"] == "smtp2.test"
    assert acc["sent_this_hour"] == 1
    assert acc["sent_today"] == 1


@pytest.mark.asyncio
async def test_list_accounts_hides_secrets(persistence):
    await persistence.add_account(
        {
            "id": "acme",
            "smtp_host": "smtp.test",
            "smtp_port": 587,
            "smtp_password": "secret",
            "ses_access_key_id": "AKID",
            "ses_secret_access_key": "shh",
        }
    )
    rows = await persistence.list_accounts()
    assert len(rows) == 1
    assert "smtp_password" not in rows[0]
    assert "ses_secret_access_key" not in rows[0]
    assert rows[0]["has_managed_credentials"] == 1


@pytest.mark.asyncio
async def test_fetch_pending_is_fifo_and_bounded(persistence, make_message):
    await persistence.insert_messages(
        [
            make_message("late", enqueued_ts=3000),
            make_message("early", enqueued_ts=1000),
            make_message("tie-a", enqueued_ts=2000),
            make_message("tie-b", enqueued_ts=2000),
        ]
    )
    await persistence.update_message("early", "sent", sent_ts=5)

    rows = await persistence.fetch_pending(limit=2)
    assert [r["id"] for r in rows] == ["tie-a", "tie-b"]
    rows = await persistence.fetch_pending(limit=10)
    assert [r["id"] for r in rows] == ["tie-a", "tie-b", "late"]


@pytest.mark.asyncio
async def test_insert_messages_ignores_duplicates(persistence, make_message):
    assert await persistence.insert_messages([make_message("m1")]) == ["m1"]
    assert await persistence.insert_messages([make_message("m1"), make_message("m2")]) == ["m2"]


@pytest.mark.asyncio
async def test_update_message_only_moves_pending_rows(persistence, make_message):
    await persistence.insert_messages([make_message("m1")])

    assert await persistence.update_message("m1", "failed", error="boom") is True
    assert await persistence.update_message("m1", "sent", sent_ts=10) is False

    row = await persistence.get_message("m1")
    assert row["status"] == "failed"
    assert row["attempt_count"] == 1
    assert row["error"] == "boom"
    assert row["sent_ts"] is None


@pytest.mark.asyncio
async def test_increment_send_counters_respects_limits(persistence):
    await persistence.add_account({"id": "acme", "hourly_limit": 2, "daily_limit": 3})
    assert await persistence.increment_send_counters("acme") is True
    assert await persistence.increment_send_counters("acme") is True
    assert await persistence.increment_send_counters("acme") is False
    acc = await persistence.get_account("acme")
    assert acc["sent_this_hour"] == 2

    assert await persistence.increment_send_counters("acme", enforce_limits=False) is True
    assert (await persistence.get_account("acme"))["sent_this_hour"] == 3


@pytest.mark.asyncio
async def test_reset_send_windows_applies_once_per_window(persistence):
    await persistence.add_account({"id": "acme"})
    await persistence.set_send_counters(
        "acme", sent_this_hour=5, sent_today=9, last_hourly_reset=1000, last_daily_reset=1000
    )

    assert await persistence.reset_send_windows("acme", 1000 + 3599) == (False, False)
    assert await persistence.reset_send_windows("acme", 1000 + 3600) == (True, False)
    assert await persistence.reset_send_windows("acme", 1000 + 3700) == (False, False)
    assert await persistence.reset_send_windows("acme", 1000 + 86400) == (True, True)

    acc = await persistence.get_account("acme")
    assert acc["sent_this_hour"] == 0
    assert acc["sent_today"] == 0
    assert acc["last_daily_reset"] == 1000 + 86400


@pytest.mark.asyncio
async def test_campaign_status_and_pending_count(persistence, make_message):
    await persistence.add_campaign({"id": "camp1", "account_id": "acme", "status": "queued"})
    await persistence.insert_messages([make_message("m1"), make_message("m2"), make_message("x", campaign_id="other")])
    await persistence.update_message("m1", "sent", sent_ts=1)

    assert await persistence.count_pending_for_campaign("camp1") == 1
    assert await persistence.count_pending() == 2
    assert await persistence.set_campaign_status("camp1", "sending") is True
    assert (await persistence.get_campaign("camp1"))["status"] == "sending"
    assert await persistence.set_campaign_status("missing", "sending") is False


@pytest.mark.asyncio
async def test_identity_lookup_is_case_insensitive(persistence):
    await persistence.add_identity(
        {"account_id": "acme", "from_email": "News@Example.com", "from_name": "Acme News", "status": "verified"}
    )
    row = await persistence.get_identity("acme", "news@EXAMPLE.com")
    assert row["from_name"] == "Acme News"
    assert await persistence.get_identity("other", "news@example.com") is None


@pytest.mark.asyncio
async def test_tracking_events(persistence, make_message):
    await persistence.insert_messages([make_message("m1")])
    context = await persistence.get_message_context("m1")
    assert context == {"message_id": "m1", "campaign_id": "camp1", "account_id": "acme"}
    assert await persistence.get_message_context("nope") is None

    base = {**context, "event_ts": 1, "ip_address": "1.2.3.4", "user_agent": "ua"}
    await persistence.record_open(base)
    await persistence.record_click({**base, "original_url": "https://example.com"})

    opens = await persistence.list_events("open")
    clicks = await persistence.list_events("click", ["m1"])
    assert len(opens) == 1 and opens[0]["ip_address"] == "1.2.3.4"
    assert clicks[0]["original_url"] == "https://example.com"
    assert await persistence.list_events("click", []) == []
