"""Cache state layer.

This package is the single source of truth for collection data read by
every consumer: the cache store, the snapshots used to undo optimistic
writes, the temporary-entity allocator and the pure merge/ordering policy.
"""
