"""
Settings and on-disk layout for the library manager.

This package is responsible for:
* Determining the data directory (via env var + sensible default).
* Loading and persisting settings.json, filling in defaults for missing fields.
* Resolving the install directories relative to the data directory.
"""
