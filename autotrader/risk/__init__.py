"""Account-level risk gating."""
