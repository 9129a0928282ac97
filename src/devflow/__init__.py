"""Launch, stream and cancel coding-agent CLIs."""

__version__ = "0.1.0"
