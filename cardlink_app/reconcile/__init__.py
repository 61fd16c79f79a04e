"""
Reconciliation module.

Converges the client-visible link session with the backend: a poll loop
that watches the account's payment methods for a new entry, and a
best-effort verification client that nudges the backend to finalize early.
"""
