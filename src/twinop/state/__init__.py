"""State layer.

This package owns the operator's only in-memory state: the per-twin
observed snapshot cache fed by device reports, plus the normalized events
the adapters hand to the work queue bridges.
"""
