from urllib.parse import parse_qs

import aiohttp
import pytest
from aioresponses import aioresponses

from campaign_dispatch.models import ManagedCredentials, QueuedMessage
from campaign_dispatch.providers import MessageRejected, TransportError
from campaign_dispatch.providers.ses import SesAdapter, extract_error, extract_message_id

ENDPOINT = "https://email.eu-west-1.amazonaws.com/"

OK_BODY = """<SendEmailResponse xmlns="http://ses.amazonaws.com/doc/2010-12-01/">
  <SendEmailResult><MessageId>0102-abc-000</MessageId></SendEmailResult>
</SendEmailResponse>"""

ERROR_BODY = """<ErrorResponse xmlns="http://ses.amazonaws.com/doc/2010-12-01/">
  <Error><Type>Sender</Type><Code>MessageRejected</Code>
  <Message>Email address is not verified. The following identities failed the check: news@example.com</Message>
  </Error><RequestId>req-1</RequestId>
</ErrorResponse>"""


def _message():
    return QueuedMessage(
        id="m1",
        account_id="acme",
        from_email="news@example.com",
        to_email="rcpt@dest.test",
        subject="Hello",
        body="<p>x</p>",
    )


def _adapter():
    return SesAdapter(ManagedCredentials(access_key_id="AKID", secret_access_key="SECRET", region="eu-west-1"))


def test_extract_helpers():
    assert extract_message_id(OK_BODY) == "0102-abc-000"
    assert extract_error(ERROR_BODY, 400).startswith("Email address is not verified.")
    assert extract_error("<html>bad gateway</html>", 502) == "SES Error 502"
    assert extract_error("", 500) == "SES Error 500"


@pytest.mark.asyncio
async def test_send_success_returns_message_id():
    adapter = _adapter()
    with aioresponses() as mocked:
        mocked.post(ENDPOINT, status=200, body=OK_BODY)
        provider_id = await adapter.send(_message(), "<p>tracked</p>", from_name="Acme")

        call = list(mocked.requests.values())[0][0]
    await adapter.close()

    assert provider_id == "0102-abc-000"
    headers = call.kwargs["headers"]
    assert headers["Authorization"].startswith("AWS4-HMAC-SHA256 Credential=AKID/")
    assert "/eu-west-1/ses/aws4_request" in headers["Authorization"]
    assert "SignedHeaders=content-type;host;x-amz-date" in headers["Authorization"]
    form = parse_qs(call.kwargs["data"].decode("utf-8"))
    assert form["Action"] == ["SendEmail"]
    assert form["Source"] == ["Acme <news@example.com>"]
    assert form["Destination.ToAddresses.member.1"] == ["rcpt@dest.test"]
    assert form["Message.Body.Html.Data"] == ["<p>tracked</p>"]
    assert form["Version"] == ["2010-12-01"]


@pytest.mark.asyncio
async def test_send_http_400_raises_rejection_with_extracted_message():
    adapter = _adapter()
    with aioresponses() as mocked:
        mocked.post(ENDPOINT, status=400, body=ERROR_BODY)
        with pytest.raises(MessageRejected) as exc_info:
            await adapter.send(_message(), "<p>x</p>")
    await adapter.close()
    assert str(exc_info.value) == (
        "Email address is not verified. The following identities failed the check: news@example.com"
    )


@pytest.mark.asyncio
async def test_client_error_is_transport_error():
    adapter = _adapter()
    with aioresponses() as mocked:
        mocked.post(ENDPOINT, exception=aiohttp.ClientConnectionError("boom"))
        with pytest.raises(TransportError, match="SES connection error: boom"):
            await adapter.send(_message(), "<p>x</p>")
    await adapter.close()
