"""Focus session timing, lifecycle, rewards and statistics."""
