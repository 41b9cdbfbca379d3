"""Synchronization engine: rate limiting, leases, reconciliation, orchestration and scheduling."""
