"""Cross-platform compatibility utilities for repoman."""

import os
import platform
import subprocess
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any, Union


class PlatformType(Enum):
    """Supported platform types."""
    WINDOWS = "windows"
    MACOS = "macos"
    LINUX = "linux"
    UNKNOWN = "unknown"


class PlatformInfo:
    """Platform information and utilities."""

    def __init__(self):
        """Initialize platform detection."""
        self._platform_type = self._detect_platform()

    def _detect_platform(self) -> PlatformType:
        """Detect the current platform."""
        system = platform.system().lower()

        if system == "windows":
            return PlatformType.WINDOWS
        elif system == "darwin":
            return PlatformType.MACOS
        elif system == "linux":
            return PlatformType.LINUX
        else:
            return PlatformType.UNKNOWN

    @property
    def is_windows(self) -> bool:
        """Check if running on Windows."""
        return self._platform_type == PlatformType.WINDOWS

    @property
    def is_macos(self) -> bool:
        return self._platform_type == PlatformType.MACOS

    @property
    def is_linux(self) -> bool:
        return self._platform_type == PlatformType.LINUX


# Global platform info instance
_platform_info: Optional[PlatformInfo] = None


def get_platform_info() -> PlatformInfo:
    """Get the global platform info instance."""
    global _platform_info
    if _platform_info is None:
        _platform_info = PlatformInfo()
    return _platform_info


def normalize_path(path: Union[str, Path]) -> Path:
    """
    Normalize a path for the current platform.

    Args:
        path: Path to normalize

    Returns:
        Normalized Path object
    """
    if isinstance(path, str):
        path = Path(path)

    # Expand user home directory (~) first, then resolve to absolute path
    return path.expanduser().resolve()


def get_default_cache_dir() -> Path:
    """
    Get the per-user cache directory that holds repository clones.

    The cache is shared by every project on the machine, so it lives in the
    user's cache location rather than inside a project.
    """
    platform_info = get_platform_info()

    if platform_info.is_windows:
        base = os.getenv("LOCALAPPDATA") or str(Path.home() / "AppData" / "Local")
        return Path(base) / "repoman"
    elif platform_info.is_macos:
        return Path.home() / "Library" / "Caches" / "repoman"
    else:
        base = os.getenv("XDG_CACHE_HOME") or str(Path.home() / ".cache")
        return Path(base) / "repoman"


def get_platform_specific_defaults() -> Dict[str, Any]:
    """
    Get platform-specific configuration defaults.

    Returns:
        Dictionary of platform-specific defaults
    """
    platform_info = get_platform_info()

    defaults = {
        'cache_dir': get_default_cache_dir(),
        'log_level': "INFO",
        'poll_interval': 0.5,
        'hide_metadata_during_jobs': True,
    }

    if platform_info.is_windows:
        # Directory renames race with antivirus/indexer handles on Windows
        defaults.update({
            'poll_interval': 1.0,
        })
    elif platform_info.is_linux:
        defaults.update({
            'poll_interval': 0.25,
        })

    return defaults


def get_git_executable() -> str:
    """
    Get the Git executable name for the current platform.

    Returns:
        Git executable name
    """
    if get_platform_info().is_windows:
        return "git.exe"
    return "git"


def validate_git_availability() -> tuple[bool, Optional[str]]:
    """
    Validate that Git is available on the current platform.

    Returns:
        Tuple of (is_available, error_message)
    """
    git_cmd = get_git_executable()

    try:
        result = subprocess.run(
            [git_cmd, "--version"],
            capture_output=True,
            text=True,
            timeout=10
        )

        if result.returncode == 0:
            return True, None
        else:
            return False, f"Git command failed: {result.stderr}"

    except FileNotFoundError:
        return False, f"Git executable '{git_cmd}' not found"
    except subprocess.TimeoutExpired:
        return False, "Git command timed out"
    except OSError as e:
        return False, f"Error checking Git availability: {e}"


def is_process_running(pid: int) -> bool:
    """
    Check if a process with given PID is still running.

    Args:
        pid: Process ID to check

    Returns:
        True if process is running, False otherwise
    """
    if pid == os.getpid():
        return True

    try:
        if get_platform_info().is_windows:
            result = subprocess.run(
                ["tasklist", "/FI", f"PID eq {pid}"],
                capture_output=True,
                text=True,
                timeout=5
            )
            return str(pid) in result.stdout
        else:
            # Signal 0 only checks that the process exists
            os.kill(pid, 0)
            return True
    except PermissionError:
        # Exists, owned by another user
        return True
    except (OSError, subprocess.TimeoutExpired, subprocess.CalledProcessError):
        return False
