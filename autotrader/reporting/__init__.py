"""Windowed PnL reconciliation against fills, position events and equity."""
