"""chatrelay: phone-number identity and pairwise chat relay over Reticulum."""

__version__ = "0.1.0"
