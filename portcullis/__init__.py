"""Portcullis — HTTP service scaffold with header authentication and rate limiting."""

from portcullis.constants import SERVICE_VERSION as __version__

__all__ = ["__version__"]
