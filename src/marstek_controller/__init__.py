"""Local UDP and cloud integration core for Marstek Venus home batteries."""

__version__ = "0.4.0"
