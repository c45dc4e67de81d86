"""Parse Zoom join links and bare meeting numbers."""

from __future__ import annotations

import re
from urllib.parse import parse_qs, quote, urlparse

from pydantic import BaseModel

DEFAULT_DOMAIN = "zoom.us"

_JOIN_PATH_RE = re.compile(r"/j/(\d+)")
_MEETING_NUMBER_RE = re.compile(r"\d{9,11}")


class MeetingLink(BaseModel):
    """Normalized meeting reference.

    Attributes:
        meeting_id: Numeric meeting id, or the trimmed input when no id
            pattern was found.
        domain: Host serving the web client.
        passcode: Passcode embedded in the link, if any.
    """

    meeting_id: str
    domain: str = DEFAULT_DOMAIN
    passcode: str = ""

    @property
    def web_client_url(self) -> str:
        """Browser join URL that bypasses the native-app launcher page."""
        return f"https://{self.domain}/wc/join/{quote(self.meeting_id)}?pwd={quote(self.passcode)}"


def parse_meeting_link(value: str, passcode: str = "") -> MeetingLink:
    """Extract meeting id, domain and passcode from a link or bare id.

    Args:
        value: A join URL (``https://<host>/j/<id>?pwd=...``) or a meeting id.
        passcode: Explicit passcode; takes precedence over one in the URL.

    Returns:
        Parsed MeetingLink.

    Raises:
        ValueError: If ``value`` is empty.
    """
    text = (value or "").strip()
    if not text:
        msg = "meeting reference is empty"
        raise ValueError(msg)

    domain = DEFAULT_DOMAIN
    meeting_id = ""
    url_passcode = ""

    if "zoom." in text:
        parsed = urlparse(text if "://" in text else f"https://{text}")
        if parsed.hostname:
            domain = parsed.hostname
        match = _JOIN_PATH_RE.search(parsed.path)
        if match:
            meeting_id = match.group(1)
        url_passcode = parse_qs(parsed.query).get("pwd", [""])[0]

    if not meeting_id:
        match = _MEETING_NUMBER_RE.search(text)
        meeting_id = match.group(0) if match else text

    return MeetingLink(meeting_id=meeting_id, domain=domain, passcode=passcode or url_passcode)
