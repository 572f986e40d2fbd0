"""Edge request gate for the municipal strategic-planning application."""

__version__ = "1.0.0"
