"""Core primitives: event bus, topic/payload types, clock and scheduler."""
