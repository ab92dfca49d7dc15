"""http api surface."""
