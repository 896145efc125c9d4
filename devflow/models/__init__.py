"""Domain and workflow definition models."""
