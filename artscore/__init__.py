"""Live scoring for talent-show competitions."""

__version__ = "0.1.0"
