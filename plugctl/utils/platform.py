"""Platform and OS detection utilities."""

import platform
from collections.abc import Iterable
from typing import Literal

PlatformOS = Literal["windows", "linux", "macos"]

# Names a plugin manifest may use in compatibility.platforms
PLATFORM_ALIASES: dict[str, tuple[PlatformOS, ...]] = {
    "linux": ("linux",),
    "macos": ("macos",),
    "darwin": ("macos",),
    "osx": ("macos",),
    "windows": ("windows",),
    "win32": ("windows",),
    "unix": ("linux", "macos"),
    "posix": ("linux", "macos"),
}


def get_os() -> PlatformOS:
    """Get the current operating system.

    Returns:
        One of: "windows", "linux", "macos"
    """
    system = platform.system().lower()
    if system == "darwin":
        return "macos"
    elif system == "windows":
        return "windows"
    else:
        return "linux"


def is_windows() -> bool:
    """Check if the current OS is Windows."""
    return get_os() == "windows"


def expand_platforms(names: Iterable[str]) -> set[PlatformOS]:
    """Map manifest platform names onto the OS values get_os() returns.

    Unknown names are ignored, so a list made only of unknown names matches
    nothing.
    """
    expanded: set[PlatformOS] = set()
    for name in names:
        expanded.update(PLATFORM_ALIASES.get(name.strip().lower(), ()))
    return expanded


def platform_matches(host_os: str, names: Iterable[str]) -> bool:
    """Check whether ``host_os`` is one of the declared platforms."""
    return host_os in expand_platforms(names)
