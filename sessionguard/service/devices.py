from __future__ import annotations

import hashlib
from datetime import datetime
from typing import List, Optional, Tuple

from sessionguard.logging import get_logger
from sessionguard.storage.models import DeviceInfo, DeviceRecord, User, utcnow

logger = get_logger(__name__)


class DeviceRegistry:
    """Bounded device history kept on the durable user entity.

    Methods mutate the ``User`` in place; persisting it is the caller's job,
    so one login produces a single durable save.
    """

    def __init__(self, *, max_devices: int = 10) -> None:
        self.max_devices = max_devices

    @staticmethod
    def fingerprint(info: DeviceInfo) -> str:
        # Versions and IP are deliberately left out so upgrades map to the same entry
        raw = "-".join(
            [info.browser_name, info.os_name, info.device_type, info.device_vendor]
        )
        return hashlib.md5(raw.encode("utf-8")).hexdigest()

    @staticmethod
    def find(user: User, device_id: str) -> Optional[DeviceRecord]:
        return next((d for d in user.devices if d.device_id == device_id), None)

    def record_login(
        self, user: User, info: DeviceInfo, *, now: Optional[datetime] = None
    ) -> Tuple[DeviceRecord, bool]:
        """Upsert the device for this login; returns ``(record, is_new)``."""
        seen_at = now or utcnow()
        device_id = self.fingerprint(info)
        existing = self.find(user, device_id)
        if existing:
            existing.last_seen = seen_at
            existing.login_count += 1
            existing.ip = info.ip
            existing.push_token = info.push_token or existing.push_token
            existing.is_active = True
            return existing, False

        record = DeviceRecord(
            device_id=device_id,
            browser_name=info.browser_name,
            browser_version=info.browser_version,
            os_name=info.os_name,
            os_version=info.os_version,
            device_model=info.device_model,
            device_type=info.device_type,
            device_vendor=info.device_vendor,
            ip=info.ip,
            user_agent=info.user_agent,
            push_token=info.push_token,
            first_seen=seen_at,
            last_seen=seen_at,
        )
        user.devices.append(record)
        if len(user.devices) > self.max_devices:
            user.devices.sort(key=lambda d: d.last_seen, reverse=True)
            dropped = user.devices[self.max_devices :]
            del user.devices[self.max_devices :]
            logger.info(
                "device_history_trimmed",
                user_id=user.id,
                dropped=[d.device_id for d in dropped],
            )
        return record, True

    def history(self, user: User) -> List[DeviceRecord]:
        return sorted(user.devices, key=lambda d: d.last_seen, reverse=True)

    def deactivate(self, user: User, device_id: str) -> bool:
        """Mark a device inactive. False when unknown or already inactive."""
        device = self.find(user, device_id)
        if not device or not device.is_active:
            return False
        device.is_active = False
        return True

    def most_recent_other_active(
        self, user: User, device_id: str
    ) -> Optional[DeviceRecord]:
        others = [d for d in user.devices if d.is_active and d.device_id != device_id]
        if not others:
            return None
        return max(others, key=lambda d: d.last_seen)

    def deactivate_others(self, user: User, device_id: str) -> int:
        count = 0
        for device in user.devices:
            if device.device_id != device_id and device.is_active:
                device.is_active = False
                count += 1
        return count


__all__ = ["DeviceRegistry"]
