"""termbridge — drive an interactive AI coding CLI from the browser."""

__version__ = "0.1.0"
