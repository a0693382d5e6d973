"""Peak search, spot prediction, refinement and scaling for serial crystallography."""

__version__ = "0.1.0"
