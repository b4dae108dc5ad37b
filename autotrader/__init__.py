"""
autotrader: risk-gated spot/futures trading controller.

Reconciles a locally persisted inventory model (positions, grids, fills)
against an eventually-consistent exchange account on a periodic tick.
"""

__version__ = "0.4.0"
