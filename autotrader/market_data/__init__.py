"""Market data: public REST client, FX rate resolution, indicators."""
