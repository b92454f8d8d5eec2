"""Clubbix billing backend.

Reconciles payment-provider webhook notifications into per-club
subscription records.
"""
