"""Device labels and source addresses as stored and displayed for leases."""

from __future__ import annotations

import re
from ipaddress import ip_address
from typing import Optional

MAX_DEVICE_LABEL_LENGTH = 255
MAX_USER_AGENT_LENGTH = 512
MAX_SOURCE_ADDRESS_LENGTH = 45
UNKNOWN_DEVICE = "Unknown device"

# Order matters: Edge and Chrome both advertise "Chrome", Chrome advertises "Safari".
_BROWSERS = (
    ("Edg", "Edge"),
    ("OPR", "Opera"),
    ("Firefox", "Firefox"),
    ("Chrome", "Chrome"),
    ("Safari", "Safari"),
)
_PLATFORMS = (
    ("iPhone", "iOS"),
    ("iPad", "iOS"),
    ("Android", "Android"),
    ("Windows", "Windows"),
    ("Mac OS X", "macOS"),
    ("Macintosh", "macOS"),
    ("CrOS", "ChromeOS"),
    ("Linux", "Linux"),
)

_EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")
_LONG_DIGITS_RE = re.compile(r"\d[\d\s().-]{6,}\d")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")


def parse_device_label(user_agent: Optional[str]) -> str:
    """Summarize a user agent as ``"Browser on OS"``."""
    if not user_agent:
        return UNKNOWN_DEVICE
    browser = next((name for marker, name in _BROWSERS if marker in user_agent), None)
    platform = next((name for marker, name in _PLATFORMS if marker in user_agent), None)
    if browser and platform:
        return f"{browser} on {platform}"
    return browser or platform or UNKNOWN_DEVICE


def scrub_device_label(label: Optional[str]) -> str:
    """Strip personal data from a client-supplied device label.

    Email addresses and long digit runs (phone numbers, serials) are
    replaced, control characters removed and the result truncated.
    """
    if not label:
        return UNKNOWN_DEVICE
    cleaned = _CONTROL_RE.sub("", label)
    cleaned = _EMAIL_RE.sub("[email]", cleaned)
    cleaned = _LONG_DIGITS_RE.sub("[number]", cleaned)
    cleaned = " ".join(cleaned.split())
    if not cleaned:
        return UNKNOWN_DEVICE
    return cleaned[:MAX_DEVICE_LABEL_LENGTH]


def resolve_device_label(label: Optional[str], user_agent: Optional[str]) -> str:
    if label and label.strip():
        return scrub_device_label(label)
    return parse_device_label(user_agent)


def normalize_source_address(address: Optional[str]) -> Optional[str]:
    """Canonical text form of an IP address; anything else is dropped."""
    if not address:
        return None
    try:
        return str(ip_address(address.strip()))
    except ValueError:
        return None


def mask_source_address(address: Optional[str]) -> Optional[str]:
    """Hide the host part of an address for display.

    IPv4 keeps three octets (``203.0.113.***``); IPv6 drops its last group.
    """
    if not address:
        return None
    try:
        parsed = ip_address(address)
    except ValueError:
        return None
    if parsed.version == 4:
        octets = str(parsed).split(".")
        return ".".join(octets[:3] + ["***"])
    groups = parsed.exploded.split(":")
    return ":".join(groups[:-1] + ["****"])


def truncate_user_agent(user_agent: Optional[str]) -> Optional[str]:
    if not user_agent:
        return None
    return _CONTROL_RE.sub("", user_agent)[:MAX_USER_AGENT_LENGTH]
