"""LogProbe - autonomous log investigation and change correlation."""

__version__ = "0.1.0"
