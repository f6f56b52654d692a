"""State store backends."""
