"""Persistence layer: tables, repositories and engine/session helpers."""
