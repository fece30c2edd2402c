"""Named device emulation profiles applied to each browser context."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable


class Device(str, Enum):
    """Devices a capture job can request, in their canonical capture order."""

    DESKTOP = "desktop"
    TABLET = "tablet"
    MOBILE = "mobile"


@dataclass(frozen=True, slots=True)
class DeviceProfile:
    """Viewport, pixel ratio, touch flags, and user agent for one device."""

    device: Device
    viewport_width: int
    viewport_height: int
    device_scale_factor: float
    is_mobile: bool
    has_touch: bool
    user_agent: str

    def context_options(self) -> dict[str, Any]:
        """Keyword arguments for ``Browser.new_context``."""

        return {
            "viewport": {"width": self.viewport_width, "height": self.viewport_height},
            "device_scale_factor": self.device_scale_factor,
            "is_mobile": self.is_mobile,
            "has_touch": self.has_touch,
            "user_agent": self.user_agent,
            "locale": "en-US",
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "device": self.device.value,
            "viewport_width": self.viewport_width,
            "viewport_height": self.viewport_height,
            "device_scale_factor": self.device_scale_factor,
            "is_mobile": self.is_mobile,
            "has_touch": self.has_touch,
        }


DEVICE_PROFILES: dict[Device, DeviceProfile] = {
    Device.DESKTOP: DeviceProfile(
        device=Device.DESKTOP,
        viewport_width=1920,
        viewport_height=1080,
        device_scale_factor=1,
        is_mobile=False,
        has_touch=False,
        user_agent=(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/130.0.0.0 Safari/537.36"
        ),
    ),
    Device.TABLET: DeviceProfile(
        device=Device.TABLET,
        viewport_width=1024,
        viewport_height=768,
        device_scale_factor=2,
        is_mobile=True,
        has_touch=True,
        user_agent=(
            "Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
            "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
        ),
    ),
    Device.MOBILE: DeviceProfile(
        device=Device.MOBILE,
        viewport_width=390,
        viewport_height=844,
        device_scale_factor=3,
        is_mobile=True,
        has_touch=True,
        user_agent=(
            "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
            "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
        ),
    ),
}

DEVICE_ORDER: tuple[Device, ...] = (Device.DESKTOP, Device.TABLET, Device.MOBILE)


def get_profile(device: Device | str) -> DeviceProfile:
    """Resolve a device name to its profile; unknown names raise ``ValueError``."""

    return DEVICE_PROFILES[Device(device)]


def ordered_devices(devices: Iterable[Device | str]) -> list[Device]:
    """Deduplicate and sort requested devices into the canonical capture order."""

    requested = {Device(device) for device in devices}
    return [device for device in DEVICE_ORDER if device in requested]
