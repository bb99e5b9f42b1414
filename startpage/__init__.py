"""
Start page backend.

This package provides the FastAPI service behind the start page: a
per-user bookmark tree of folders and links stored in Postgres (or an
in-memory store for development and tests).
"""
