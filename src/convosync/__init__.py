"""convosync - keep AI coding-assistant conversation histories in one local, searchable store."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("convosync")
except PackageNotFoundError:
    __version__ = "unknown"

__all__ = ["__version__"]
