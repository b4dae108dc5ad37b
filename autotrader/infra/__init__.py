"""Process infrastructure: logging."""
