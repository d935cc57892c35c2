import pytest
import pytest_asyncio

from campaign_dispatch.persistence import Persistence


@pytest_asyncio.fixture
async def persistence(tmp_path):
    p = Persistence(str(tmp_path / "campaigns.db"))
    await p.init_db()
    return p


@pytest.fixture
def make_message():
    def _make(msg_id, account_id="acme", campaign_id="camp1", enqueued_ts=1000, **extra):
        data = {
            "id": msg_id,
            "account_id": account_id,
            "campaign_id": campaign_id,
            "contact_id": f"contact-{msg_id}",
            "from_email": "news@example.com",
            "to_email": f"{msg_id}@dest.test",
            "subject": f"Hello {msg_id}",
            "body": "<html><body><p>Hi</p></body></html>",
            "enqueued_ts": enqueued_ts,
        }
        data.update(extra)
        return data

    return _make
