from __future__ import annotations

from typing import Optional

from user_agents import parse as parse_ua

from device_ledger.core.models import DeviceClass, ParsedUserAgent

# Automation builds that announce themselves in the UA string.
HEADLESS_MARKERS = (
    "headlesschrome",
    "headlessfirefox",
    "phantomjs",
    "puppeteer",
    "playwright",
    "selenium",
    "slimerjs",
)

_OTHER = "Other"


def _family(value: Optional[str]) -> str:
    if not value or value == _OTHER:
        return "Unknown"
    return value


def device_class_for(is_mobile: bool, is_tablet: bool) -> DeviceClass:
    if is_tablet:
        return DeviceClass.TABLET
    if is_mobile:
        return DeviceClass.MOBILE
    return DeviceClass.DESKTOP


def is_headless(user_agent: Optional[str], *, webdriver: bool = False) -> bool:
    if webdriver:
        return True
    ua = (user_agent or "").lower()
    return any(marker in ua for marker in HEADLESS_MARKERS)


def parse_user_agent(user_agent: Optional[str], *, webdriver: bool = False) -> ParsedUserAgent:
    ua_string = user_agent if user_agent and user_agent != "Unknown" else ""
    ua = parse_ua(ua_string)

    os_name = _family(ua.os.family)
    device_family = _family(ua.device.family)
    return ParsedUserAgent(
        browser_name=_family(ua.browser.family),
        browser_version=ua.browser.version_string or "",
        os_name=os_name,
        os_version=ua.os.version_string or "",
        platform=device_family if device_family != "Unknown" else os_name,
        device_class=device_class_for(ua.is_mobile, ua.is_tablet),
        is_bot=bool(ua.is_bot),
        is_headless=is_headless(ua_string, webdriver=webdriver),
    )
