"""
Utility functions module.

Time Semantics:
- Session bounds (created_at, timeout_at) are wall-clock UTC datetimes
- The reconciliation timeout is absolute from session creation
- Components take an injectable clock so tests can control "now"
"""
