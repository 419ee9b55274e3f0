from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Optional

from user_agents import parse as parse_ua

from admauth.storage.models import DeviceInfo

DEFAULT_IP = "127.0.0.1"


@dataclass(frozen=True)
class RequestMeta:
    """Client details captured at login for sessions and login history."""

    ip_address: str = DEFAULT_IP
    user_agent: str = "Unknown"
    device_info: DeviceInfo = field(default_factory=DeviceInfo)

    @classmethod
    def from_headers(
        cls, headers: Mapping[str, str], peer_host: Optional[str] = None
    ) -> "RequestMeta":
        user_agent = headers.get("user-agent") or "Unknown"
        return cls(
            ip_address=client_ip(headers, peer_host),
            user_agent=user_agent,
            device_info=parse_user_agent(user_agent),
        )


def client_ip(headers: Mapping[str, str], peer_host: Optional[str] = None) -> str:
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = (headers.get(header) or "").strip()
        if value:
            return value
    # TestClient reports "testclient" as its peer
    if peer_host and peer_host != "testclient":
        return peer_host
    return DEFAULT_IP


def _family(name: Optional[str]) -> str:
    return "Unknown" if not name or name == "Other" else name


def parse_user_agent(user_agent: Optional[str]) -> DeviceInfo:
    if not user_agent or user_agent == "Unknown":
        return DeviceInfo()

    parsed = parse_ua(user_agent)
    if parsed.is_tablet:
        device = "Tablet"
    elif parsed.is_mobile:
        device = "Mobile"
    elif parsed.is_bot:
        device = "Bot"
    else:
        device = "Desktop"

    return DeviceInfo(
        user_agent=user_agent,
        browser=_family(parsed.browser.family),
        os=_family(parsed.os.family),
        device=device,
        is_mobile=parsed.is_mobile or parsed.is_tablet,
    )
