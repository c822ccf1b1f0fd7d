"""
Model package for the messenger.

``storage`` holds the SQLAlchemy-backed key/value records and the adapter
around them; ``profile`` holds the pure record shape and repair helpers.
"""

__all__ = []
