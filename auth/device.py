"""
auth/device.py -- Device information recorded with each login.

The host application may hand the orchestrator a DeviceInfo in one of three
shapes:
  - the dataclass itself,
  - a compact "ip|os|browser" string (e.g. carried in OAuth state),
  - a base64-encoded JSON blob {"IpAddress": ..., "OS": ..., "Browser": ...}.

Any field that is missing or blank becomes the literal "Unknown".
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass

from auth.errors import InvalidArgumentError

UNKNOWN = "Unknown"
SEPARATOR = "|"


def _or_unknown(value: str | None) -> str:
    value = (value or "").strip()
    return value or UNKNOWN


@dataclass
class DeviceInfo:
    ip_address: str = UNKNOWN
    os: str = UNKNOWN
    browser: str = UNKNOWN

    @classmethod
    def empty(cls) -> DeviceInfo:
        return cls()

    @classmethod
    def from_delimited(cls, text: str | None) -> DeviceInfo:
        """Parse "ip|os|browser". Missing trailing parts default to Unknown."""
        parts = (text or "").split(SEPARATOR)
        parts += [""] * (3 - len(parts))
        return cls(ip_address=_or_unknown(parts[0]), os=_or_unknown(parts[1]), browser=_or_unknown(parts[2]))

    def to_delimited(self) -> str:
        # The separator is reserved; strip it from values so the string always splits into three.
        clean = [v.replace(SEPARATOR, " ") for v in (self.ip_address, self.os, self.browser)]
        return SEPARATOR.join(clean)

    @classmethod
    def from_base64(cls, text: str) -> DeviceInfo:
        """Decode the base64 JSON variant.

        Raises:
            InvalidArgumentError: empty input, bad base64, or bad JSON.
        """
        if not text or not text.strip():
            raise InvalidArgumentError("Device info payload cannot be empty.")
        try:
            data = json.loads(base64.b64decode(text, validate=True).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise InvalidArgumentError("Device info payload is not base64-encoded JSON.") from exc
        if not isinstance(data, dict):
            raise InvalidArgumentError("Device info payload must be a JSON object.")
        return cls(
            ip_address=_or_unknown(data.get("IpAddress")),
            os=_or_unknown(data.get("OS")),
            browser=_or_unknown(data.get("Browser")),
        )

    def to_base64(self) -> str:
        payload = {"IpAddress": self.ip_address, "OS": self.os, "Browser": self.browser}
        return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


# Checked in order; first match wins. Edge and Opera UAs also contain "Chrome",
# and Chrome UAs contain "Safari", so the more specific tokens come first.
_BROWSERS = (
    ("Edg/", "Edge"),
    ("OPR/", "Opera"),
    ("Firefox/", "Firefox"),
    ("Chrome/", "Chrome"),
    ("Safari/", "Safari"),
)
_SYSTEMS = (
    ("Windows", "Windows"),
    ("Android", "Android"),
    ("iPhone", "iOS"),
    ("iPad", "iOS"),
    ("Mac OS X", "macOS"),
    ("Linux", "Linux"),
)


def device_info_from_request(ip_address: str | None, user_agent: str | None) -> DeviceInfo:
    """Coarse OS / browser detection from a User-Agent header."""
    ua = user_agent or ""
    browser = next((name for token, name in _BROWSERS if token in ua), UNKNOWN)
    os_name = next((name for token, name in _SYSTEMS if token in ua), UNKNOWN)
    return DeviceInfo(ip_address=_or_unknown(ip_address), os=os_name, browser=browser)
