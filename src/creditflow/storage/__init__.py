"""Persistence: relational database and ephemeral key/value store."""
