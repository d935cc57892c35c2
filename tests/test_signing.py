from datetime import datetime, timezone

from campaign_dispatch import signing

SECRET = "wJalrXUtnFEMI/K7MDENG+bPxRfiCYEXAMPLEKEY"
EMPTY_HASH = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded; charset=utf-8",
    "Host": "iam.amazonaws.com",
    "X-Amz-Date": "20150830T123600Z",
}


def test_signing_key_vector():
    key = signing.signing_key(SECRET, "20120215", "us-east-1", "iam")
    assert key.hex() == "f4780e2d9f65fa895f9c67b32ce1baf0b0d8a43505a000a1a9e090d414db404d"


def test_canonical_request_vector():
    canonical, signed = signing.canonical_request(
        "GET", "/", "Version=2010-05-08&Action=ListUsers", HEADERS, EMPTY_HASH
    )
    assert signed == "content-type;host;x-amz-date"
    assert canonical == (
        "GET\n/\nAction=ListUsers&Version=2010-05-08\n"
        "content-type:application/x-www-form-urlencoded; charset=utf-8\n"
        "host:iam.amazonaws.com\n"
        "x-amz-date:20150830T123600Z\n\n"
        "content-type;host;x-amz-date\n" + EMPTY_HASH
    )
    assert signing.sha256_hex(canonical) == "f536975d06c0309214f805bb90ccff089219ecd68b2577efef23edd43b7e1a59"


def test_signature_vector():
    canonical, _ = signing.canonical_request("GET", "/", "Action=ListUsers&Version=2010-05-08", HEADERS, EMPTY_HASH)
    scope = signing.credential_scope("20150830", "us-east-1", "iam")
    to_sign = signing.string_to_sign("20150830T123600Z", scope, canonical)
    key = signing.signing_key(SECRET, "20150830", "us-east-1", "iam")
    assert signing.signature(key, to_sign) == "5d672d79c15b13162d9279b0855cfba6789a8edb4c82c400e06b5924a6f2b5d7"


def test_sign_request_builds_authorization_header():
    headers = signing.sign_request(
        method="GET",
        url="https://iam.amazonaws.com/?Action=ListUsers&Version=2010-05-08",
        body=b"",
        access_key_id="AKIDEXAMPLE",
        secret_access_key=SECRET,
        region="us-east-1",
        service="iam",
        now=datetime(2015, 8, 30, 12, 36, 0, tzinfo=timezone.utc),
    )
    assert headers["X-Amz-Date"] == "20150830T123600Z"
    assert headers["Authorization"] == (
        "AWS4-HMAC-SHA256 Credential=AKIDEXAMPLE/20150830/us-east-1/iam/aws4_request, "
        "SignedHeaders=content-type;host;x-amz-date, "
        "Signature=5d672d79c15b13162d9279b0855cfba6789a8edb4c82c400e06b5924a6f2b5d7"
    )


def test_canonical_headers_trim_and_collapse():
    block, signed = signing.canonical_headers({"X-Custom": "  a   b  ", "Host": "h"})
    assert block == "host:h\nx-custom:a b\n"
    assert signed == "host;x-custom"


def test_signature_is_deterministic():
    kwargs = dict(
        method="POST",
        url="https://email.eu-west-1.amazonaws.com/",
        body="Action=SendEmail",
        access_key_id="AK",
        secret_access_key="SK",
        region="eu-west-1",
        service="ses",
        now=datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
    )
    assert signing.sign_request(**kwargs) == signing.sign_request(**kwargs)
