"""
Backend package for the MediTrack portal.

This package provides a FastAPI application with session-based auth, role
selection and per-role profile details, backed by a storage layer that falls
back from Postgres to an in-process store when the database goes away.
"""
