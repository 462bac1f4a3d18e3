"""Durable SQLite storage for the scheduler."""
