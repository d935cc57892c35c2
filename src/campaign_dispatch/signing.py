# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""AWS Signature Version 4 request signing.

Pure functions that turn a request description and a secret into the
``Authorization`` header expected by AWS query APIs such as SES. Nothing here
performs I/O, so the same inputs always produce the same signature.

Example:
    Signing an SES call::

        headers = sign_request(
            method="POST",
            url="https://email.us-east-1.amazonaws.com/",
            body=payload,
            access_key_id="AKIA...",
            secret_access_key="...",
            region="us-east-1",
            service="ses",
        )
"""

from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timezone
from urllib.parse import quote, urlsplit

ALGORITHM = "AWS4-HMAC-SHA256"
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded; charset=utf-8"


def sha256_hex(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def _hmac(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


def amz_timestamps(now: datetime | None = None) -> tuple[str, str]:
    """Return ``(amz_date, date_stamp)`` for the given or current UTC time."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.strftime("%Y%m%dT%H%M%SZ"), now.strftime("%Y%m%d")


def canonical_query(query: str) -> str:
    """Sort query parameters by name and re-encode them with RFC 3986 rules."""
    if not query:
        return ""
    pairs = []
    for part in query.split("&"):
        if not part:
            continue
        name, _, value = part.partition("=")
        pairs.append((quote(name, safe="-_.~"), quote(value, safe="-_.~%")))
    pairs.sort()
    return "&".join(f"{k}={v}" for k, v in pairs)


def canonical_headers(headers: dict[str, str]) -> tuple[str, str]:
    """Return the canonical header block and the signed header list.

    Names are lower-cased and sorted, values trimmed with inner runs of
    whitespace collapsed to a single space.
    """
    normalized = {
        name.strip().lower(): " ".join(str(value).split())
        for name, value in headers.items()
    }
    names = sorted(normalized)
    block = "".join(f"{name}:{normalized[name]}\n" for name in names)
    return block, ";".join(names)


def canonical_request(
    method: str,
    path: str,
    query: str,
    headers: dict[str, str],
    payload_hash: str,
) -> tuple[str, str]:
    """Build the canonical request.

    Returns:
        Tuple of (canonical_request, signed_headers).
    """
    block, signed = canonical_headers(headers)
    request = "\n".join(
        [
            method.upper(),
            path or "/",
            canonical_query(query),
            block,
            signed,
            payload_hash,
        ]
    )
    return request, signed


def credential_scope(date_stamp: str, region: str, service: str) -> str:
    return f"{date_stamp}/{region}/{service}/aws4_request"


def string_to_sign(amz_date: str, scope: str, canonical: str) -> str:
    return "\n".join([ALGORITHM, amz_date, scope, sha256_hex(canonical)])


def signing_key(secret_access_key: str, date_stamp: str, region: str, service: str) -> bytes:
    """Derive the signing key: HMAC chain over date, region, service and ``aws4_request``."""
    k_date = _hmac(f"AWS4{secret_access_key}".encode("utf-8"), date_stamp)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    return _hmac(k_service, "aws4_request")


def signature(key: bytes, to_sign: str) -> str:
    return hmac.new(key, to_sign.encode("utf-8"), hashlib.sha256).hexdigest()


def sign_request(
    *,
    method: str,
    url: str,
    body: bytes | str,
    access_key_id: str,
    secret_access_key: str,
    region: str,
    service: str,
    content_type: str = FORM_CONTENT_TYPE,
    now: datetime | None = None,
) -> dict[str, str]:
    """Compute the headers for a signed request.

    The signed header set is ``content-type``, ``host`` and ``x-amz-date``.

    Returns:
        Headers to send: ``Content-Type``, ``Host``, ``X-Amz-Date`` and
        ``Authorization``.
    """
    amz_date, date_stamp = amz_timestamps(now)
    parts = urlsplit(url)
    headers = {
        "content-type": content_type,
        "host": parts.netloc,
        "x-amz-date": amz_date,
    }
    canonical, signed = canonical_request(
        method, parts.path or "/", parts.query, headers, sha256_hex(body)
    )
    scope = credential_scope(date_stamp, region, service)
    key = signing_key(secret_access_key, date_stamp, region, service)
    sig = signature(key, string_to_sign(amz_date, scope, canonical))
    return {
        "Content-Type": content_type,
        "Host": parts.netloc,
        "X-Amz-Date": amz_date,
        "Authorization": (
            f"{ALGORITHM} Credential={access_key_id}/{scope}, "
            f"SignedHeaders={signed}, Signature={sig}"
        ),
    }
