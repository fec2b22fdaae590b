"""runner-sync: hand working data over between rotating CI runners on a tailnet."""

__version__ = "1.0.0"
