"""The ArchGuard GitHub check run orchestrator."""

from importlib.metadata import PackageNotFoundError, version

__version__: str
"""The application version string (PEP 440 / SemVer compatible)."""

try:
    __version__ = version("archguard")
except PackageNotFoundError:
    # package is not installed
    __version__ = "0.0.0"

__all__ = ["__version__"]
