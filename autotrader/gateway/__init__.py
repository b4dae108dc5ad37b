"""Exchange and signal collaborator contracts."""
