"""Fetch, upscale and serve images as tracked jobs."""

__version__ = "0.1.0"
