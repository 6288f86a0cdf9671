"""wani-offline: offline WaniKani lessons and reviews with later sync."""

__version__ = "0.4.0"
