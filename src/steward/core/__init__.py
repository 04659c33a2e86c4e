"""Core services for steward: storage, identity, and cross-device sync."""
