# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Open and click tracking for outbound HTML bodies.

``inject_tracking`` appends an invisible beacon image and routes anchor links
through the click collector. The transformation is pure: the same body and
message id always produce the same output, and markup other than anchor
``href`` values is left as it is.
"""

from __future__ import annotations

import html
import re
from urllib.parse import quote

OPEN_PATH = "/track/open"
CLICK_PATH = "/track/click"

_HREF_RE = re.compile(
    r"""(<a\b[^>]*?\shref\s*=\s*)(?:"([^"]*)"|'([^']*)'|([^\s"'<>`]+))""",
    re.IGNORECASE,
)
_BODY_CLOSE_RE = re.compile(r"</body\s*>", re.IGNORECASE)


def open_url(base_url: str, message_id: str) -> str:
    return f"{base_url.rstrip('/')}{OPEN_PATH}?id={quote(str(message_id), safe='')}"


def click_url(base_url: str, message_id: str, destination: str) -> str:
    return (
        f"{base_url.rstrip('/')}{CLICK_PATH}?id={quote(str(message_id), safe='')}"
        f"&url={quote(destination, safe='')}"
    )


def beacon_tag(base_url: str, message_id: str) -> str:
    src = html.escape(open_url(base_url, message_id), quote=True)
    return (
        f'<img src="{src}" width="1" height="1" alt="" '
        'style="display:none;border:0;width:1px;height:1px" />'
    )


def _is_tracked(destination: str, base_url: str) -> bool:
    base = base_url.rstrip("/")
    return destination.startswith(base + OPEN_PATH) or destination.startswith(base + CLICK_PATH)


def rewrite_links(body: str, message_id: str, base_url: str) -> str:
    """Route every anchor ``href`` (quoted or not) through the click collector.

    ``mailto:`` links, fragment-only links, empty hrefs and links already
    pointing at the tracking endpoints are left unchanged.
    """

    def _replace(match: re.Match[str]) -> str:
        prefix, double, single, bare = match.groups()
        # unquoted values come back double-quoted
        quote_char = "'" if single is not None else '"'
        raw = next(value for value in (double, single, bare) if value is not None)
        destination = html.unescape(raw).strip()
        if (
            not destination
            or destination.startswith("#")
            or destination.lower().startswith("mailto:")
            or _is_tracked(destination, base_url)
        ):
            return match.group(0)
        tracked = html.escape(click_url(base_url, message_id, destination), quote=True)
        return f"{prefix}{quote_char}{tracked}{quote_char}"

    return _HREF_RE.sub(_replace, body)


def insert_beacon(body: str, message_id: str, base_url: str) -> str:
    """Place the beacon before the last ``</body>``, or at the end."""
    tag = beacon_tag(base_url, message_id)
    closings = list(_BODY_CLOSE_RE.finditer(body))
    if not closings:
        return body + tag
    pos = closings[-1].start()
    return body[:pos] + tag + body[pos:]


def inject_tracking(body: str, message_id: str, base_url: str | None) -> str:
    """Return ``body`` with links rewritten and the open beacon appended.

    Links are rewritten before the beacon is added, so the beacon URL itself
    is never routed through the click collector. Without a base URL the body
    is returned unchanged.
    """
    if not base_url:
        return body
    rewritten = rewrite_links(body or "", message_id, base_url)
    return insert_beacon(rewritten, message_id, base_url)
