"""taskloop - task graph compiler and verification-gated execution loop."""

__version__ = "0.1.0"
