"""puppystation — live fleet dashboard: agents, activity feed, review queue."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("puppystation")
except PackageNotFoundError:
    __version__ = "0.1.0"  # fallback for development
