"""Input plugins."""
