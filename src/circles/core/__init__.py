"""Core infrastructure -- structured logging and durable key-value storage."""
