"""Persistence layer: engine/session management, ORM models and query helpers."""
