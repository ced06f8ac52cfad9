"""Persistence layer: SQLite schema, repositories and the embedding store."""
