"""Bot feature extensions."""
