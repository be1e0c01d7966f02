"""codewiki: multi-language code analysis to a cross-referenced document model."""

__version__ = "0.3.0"
