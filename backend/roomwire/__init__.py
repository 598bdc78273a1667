"""roomwire: real-time chat backend with room fanout and presence."""

__version__ = "0.1.0"
