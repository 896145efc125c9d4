"""Shared utilities: logging, retry, rate limiting and HTTP pooling."""
