"""
core/useragent.py -- Coarse User-Agent classification.

Substring matching only. Good enough to label devices for the user's device
list and to drive DeviceCondition in conditional access; not a substitute
for a real UA database. Order matters: mobile platforms embed desktop tokens
("Mac OS X" appears in iPhone UAs, "Safari" in Chrome UAs).
"""

from __future__ import annotations

from typing import NamedTuple


class UserAgentInfo(NamedTuple):
    device_type: str  # "desktop", "mobile", "tablet"
    os: str
    browser: str


def describe_user_agent(user_agent: str) -> UserAgentInfo:
    ua = user_agent or ""

    if "iPad" in ua or "Tablet" in ua:
        device_type = "tablet"
    elif "Mobile" in ua or "Android" in ua or "iPhone" in ua:
        device_type = "mobile"
    else:
        device_type = "desktop"

    if "Android" in ua:
        os_name = "Android"
    elif "iPhone" in ua or "iPad" in ua:
        os_name = "iOS"
    elif "Windows" in ua:
        os_name = "Windows"
    elif "Mac" in ua:
        os_name = "macOS"
    elif "Linux" in ua:
        os_name = "Linux"
    else:
        os_name = "Unknown OS"

    if "Edg/" in ua:
        browser = "Edge"
    elif "Chrome" in ua:
        browser = "Chrome"
    elif "Firefox" in ua:
        browser = "Firefox"
    elif "Safari" in ua:
        browser = "Safari"
    else:
        browser = "Unknown Browser"

    return UserAgentInfo(device_type, os_name, browser)
