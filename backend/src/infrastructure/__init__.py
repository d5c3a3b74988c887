"""Adapters for external systems: Redis Streams bus, Redis locks, broadcast gateway."""
