"""
Cardlink - Payment Method Link Reconciliation Engine

Attaches an externally tokenized card to an account when the authoritative
confirmation arrives asynchronously (via a backend webhook). Reconciles the
client-visible link session against the backend until it is confirmed,
timed out or cancelled.
"""

__version__ = "0.1.0"
__author__ = "Cardlink Team"
