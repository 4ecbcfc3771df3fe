"""Fleet controller.

Keeps sets of identical compute units at their desired replica count:
 - selector-based membership and ownership tracking
 - adoption of orphaned units
 - scale up / scale down with a deterministic victim order
 - status aggregation from node readiness

Objects live in a small SQLite store with optimistic concurrency; a
threaded work queue drives the reconciler from store events.
"""
