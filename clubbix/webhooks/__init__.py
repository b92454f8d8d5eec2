"""Webhook reconciliation engine.

Inbound Stripe events are signature-verified, normalized into canonical
domain events, deduplicated, reconciled against the stored subscription
record and persisted per club.
"""
