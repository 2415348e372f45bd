"""session-ledger: durable session recording for AI coding assistants."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("session-ledger")
except PackageNotFoundError:
    __version__ = "0.0.0"
