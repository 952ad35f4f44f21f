"""costbook - construction cost library and project rates service layer."""

__version__ = "0.1.0"
