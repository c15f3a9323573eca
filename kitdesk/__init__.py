"""Equipment booking engine backed by a Snipe-IT custody system."""

__version__ = "1.0.0"
