from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(raw: Any) -> Optional[datetime]:
    if raw is None or isinstance(raw, datetime):
        return raw
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# (needle, browser name, version token); first match wins
_BROWSERS = (
    ("edg", "Edge", r"Edg[A-Za-z]*/([\d.]+)"),
    ("opr/", "Opera", r"OPR/([\d.]+)"),
    ("opera", "Opera", r"Opera/([\d.]+)"),
    ("firefox", "Firefox", r"Firefox/([\d.]+)"),
    ("fxios", "Firefox", r"FxiOS/([\d.]+)"),
    ("crios", "Chrome", r"CriOS/([\d.]+)"),
    ("chrome", "Chrome", r"Chrome/([\d.]+)"),
    ("safari", "Safari", r"Version/([\d.]+)"),
)

# Mobile platforms first: their user agents also mention Linux or Mac OS
_PLATFORMS = (
    ("ipad", "iOS", "tablet", "Apple", "iPad", r"OS ([\d_]+)"),
    ("iphone", "iOS", "mobile", "Apple", "iPhone", r"OS ([\d_]+)"),
    ("android", "Android", "mobile", "Unknown", "Unknown", r"Android ([\d.]+)"),
    ("windows", "Windows", "desktop", "Unknown", "Unknown", r"Windows NT ([\d.]+)"),
    ("mac", "macOS", "desktop", "Apple", "Macintosh", r"Mac OS X ([\d_.]+)"),
    ("linux", "Linux", "desktop", "Unknown", "Unknown", None),
)


def _version(pattern: Optional[str], user_agent: str) -> str:
    if not pattern:
        return "Unknown"
    match = re.search(pattern, user_agent)
    return match.group(1).replace("_", ".") if match else "Unknown"


def parse_user_agent(user_agent: Optional[str]) -> Dict[str, str]:
    """Coarse browser/OS/device detection by substring match."""
    info = {
        "browser_name": "Unknown",
        "browser_version": "Unknown",
        "os_name": "Unknown",
        "os_version": "Unknown",
        "device_model": "Unknown",
        "device_type": "desktop",
        "device_vendor": "Unknown",
    }
    if not user_agent:
        return info
    ua_lower = user_agent.lower()

    for needle, name, version_pattern in _BROWSERS:
        if needle in ua_lower:
            info["browser_name"] = name
            info["browser_version"] = _version(version_pattern, user_agent)
            break

    for needle, os_name, device_type, vendor, model, version_pattern in _PLATFORMS:
        if needle in ua_lower:
            info["os_name"] = os_name
            info["os_version"] = _version(version_pattern, user_agent)
            info["device_type"] = device_type
            info["device_vendor"] = vendor
            info["device_model"] = model
            break

    if info["os_name"] == "Android":
        if "mobile" not in ua_lower:
            info["device_type"] = "tablet"
        if "samsung" in ua_lower or "sm-" in ua_lower:
            info["device_vendor"] = "Samsung"
        elif "pixel" in ua_lower:
            info["device_vendor"] = "Google"
    return info


@dataclass
class DeviceInfo:
    """Device/browser description of a single login request."""

    browser_name: str = "Unknown"
    browser_version: str = "Unknown"
    os_name: str = "Unknown"
    os_version: str = "Unknown"
    device_model: str = "Unknown"
    device_type: str = "desktop"
    device_vendor: str = "Unknown"
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    push_token: Optional[str] = None

    @classmethod
    def from_request(
        cls,
        user_agent: Optional[str],
        ip: Optional[str] = None,
        push_token: Optional[str] = None,
    ) -> "DeviceInfo":
        return cls(
            ip=ip,
            user_agent=(user_agent or "")[:512] or None,
            push_token=push_token,
            **parse_user_agent(user_agent),
        )

    def summary(self) -> Dict[str, Any]:
        return {
            "browser": f"{self.browser_name} {self.browser_version}".strip(),
            "os": f"{self.os_name} {self.os_version}".strip(),
            "device_type": self.device_type,
            "device_vendor": self.device_vendor,
            "ip": self.ip,
        }


@dataclass
class DeviceRecord:
    device_id: str
    browser_name: str = "Unknown"
    browser_version: str = "Unknown"
    os_name: str = "Unknown"
    os_version: str = "Unknown"
    device_model: str = "Unknown"
    device_type: str = "desktop"
    device_vendor: str = "Unknown"
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    push_token: Optional[str] = None
    first_seen: datetime = field(default_factory=utcnow)
    last_seen: datetime = field(default_factory=utcnow)
    login_count: int = 1
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["first_seen"] = _format_dt(self.first_seen)
        data["last_seen"] = _format_dt(self.last_seen)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeviceRecord":
        values = dict(data)
        values["first_seen"] = _parse_dt(values.get("first_seen")) or utcnow()
        values["last_seen"] = _parse_dt(values.get("last_seen")) or utcnow()
        return cls(**values)


@dataclass
class User:
    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    is_active: bool = True
    is_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    last_device_info: Optional[Dict[str, Any]] = None
    devices: List[DeviceRecord] = field(default_factory=list)

    def public_profile(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "is_verified": self.is_verified,
            "last_login": _format_dt(self.last_login),
            "last_device_info": self.last_device_info,
            "created_at": _format_dt(self.created_at),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "is_active": self.is_active,
            "is_verified": self.is_verified,
            "created_at": _format_dt(self.created_at),
            "updated_at": _format_dt(self.updated_at),
            "last_login": _format_dt(self.last_login),
            "password_changed_at": _format_dt(self.password_changed_at),
            "last_device_info": self.last_device_info,
            "devices": [device.to_dict() for device in self.devices],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        return cls(
            id=str(data["id"]),
            email=data["email"],
            first_name=data.get("first_name") or "",
            last_name=data.get("last_name") or "",
            is_active=bool(data.get("is_active", True)),
            is_verified=bool(data.get("is_verified", False)),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            updated_at=_parse_dt(data.get("updated_at")) or utcnow(),
            last_login=_parse_dt(data.get("last_login")),
            password_changed_at=_parse_dt(data.get("password_changed_at")),
            last_device_info=data.get("last_device_info"),
            devices=[DeviceRecord.from_dict(d) for d in data.get("devices") or []],
        )


@dataclass
class SessionRecord:
    """Fast-store session payload stored under ``session:<id>``."""

    session_id: str
    user_id: str
    created_at: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "SessionRecord":
        data = json.loads(raw)
        return cls(
            session_id=data["session_id"],
            user_id=data["user_id"],
            created_at=data["created_at"],
            email=data.get("email"),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
        )


@dataclass
class RefreshTokenRecord:
    """Fast-store payload stored under ``refresh_token:<token>``."""

    user_id: str
    session_id: str
    created_at: str

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "RefreshTokenRecord":
        data = json.loads(raw)
        return cls(
            user_id=data["user_id"],
            session_id=data["session_id"],
            created_at=data["created_at"],
        )
