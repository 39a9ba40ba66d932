"""Airtable → Google Sheets mirroring and WP All Import job coordination."""

from sheetbridge.version import __version__

__all__ = ["__version__"]
