"""loco-tracker: live locomotive position collector and cache."""

__version__ = "0.1.0"
