"""Core infrastructure: configuration, logging, caching, rate limiting and errors."""
