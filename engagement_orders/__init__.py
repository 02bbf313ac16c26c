"""Order reconciliation service for paid social-engagement orders."""

__version__ = "1.0.0"
