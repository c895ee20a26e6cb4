"""Finished DVR recordings into a media library."""

__version__ = "0.1.0"
