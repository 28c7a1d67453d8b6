"""ACP agent bridging Agent Client Protocol clients to Z.AI GLM models."""

__version__ = "0.3.0"
