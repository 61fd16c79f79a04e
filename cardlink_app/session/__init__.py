"""
Link session lifecycle module.

Holds the link session data model, the single-slot session store and the
initiator that starts new tokenization attempts.
Handles transitions PENDING → VERIFYING → CONFIRMED / TIMED_OUT / CANCELLED.
"""
