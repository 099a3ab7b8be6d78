"""gitscope scan engine: repository analysis core."""

__version__ = "0.1.0"
