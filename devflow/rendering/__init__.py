"""Markdown rendering for posts made on the platform."""

from devflow.rendering.engine import TemplateRenderer

__all__ = ["TemplateRenderer"]
