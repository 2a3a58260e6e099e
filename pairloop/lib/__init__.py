"""Shared infrastructure: config, schema validation, rate limiting, stats."""
