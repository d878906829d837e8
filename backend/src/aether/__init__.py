"""Aether realtime core: connection registry, fan-out and call signaling."""
