"""One-way mirror of a local document tree onto Google Drive."""

__version__ = "0.3.0"
