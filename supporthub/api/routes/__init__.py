"""Route modules exposed by the API package."""

from . import tickets

__all__ = ["tickets"]
