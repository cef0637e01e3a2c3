"""KV-backed session snapshots."""
