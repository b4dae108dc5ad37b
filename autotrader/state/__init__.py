"""Durable state: persisted payload, fill ledger, domain models."""
