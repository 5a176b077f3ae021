"""Bitcoin deposit monitoring and confirmation-based settlement."""

__version__ = "0.1.0"
