"""Core utilities shared by every component."""
