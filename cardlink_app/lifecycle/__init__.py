"""
Host lifecycle module.

Reacts to a generic "host resumed foreground" signal by forcing an early
reconciliation of the active link session.
"""
