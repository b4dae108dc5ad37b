"""Pure grid calculations."""
