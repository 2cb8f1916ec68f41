"""Library and runtime metadata attached to events."""

import platform
import sys
from typing import Any

LIB_NAME = "telemeter-python"
LIB_VERSION = "0.1.0"


def os_name() -> str:
    system = platform.system()
    return {"Darwin": "macOS"}.get(system, system) or sys.platform


def os_version() -> str:
    if platform.system() == "Darwin":
        return platform.mac_ver()[0] or platform.release()
    return platform.release()


def device_type() -> str:
    if sys.platform in ("ios", "android"):
        return "Mobile"
    if sys.platform == "emscripten":
        return "Web"
    return "Desktop"


def sdk_properties() -> dict[str, Any]:
    """Properties attached to every captured event."""
    return {
        "$lib": LIB_NAME,
        "$lib_version": LIB_VERSION,
        "$os": os_name(),
        "$os_version": os_version(),
        "$python_version": platform.python_version(),
        "$device_type": device_type(),
    }


def default_person_properties(app_version: str | None = None) -> dict[str, Any]:
    """Person properties sent with flag requests unless overridden."""
    props: dict[str, Any] = {
        "$os_name": os_name(),
        "$os_version": os_version(),
        "$device_type": device_type(),
        "$lib": LIB_NAME,
        "$lib_version": LIB_VERSION,
    }
    if app_version:
        props["$app_version"] = app_version
    return props
