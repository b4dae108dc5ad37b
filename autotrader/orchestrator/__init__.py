"""Top-level controller: the periodic tick and the imperative surface."""
