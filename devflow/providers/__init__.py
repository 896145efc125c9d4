"""Platform providers."""
