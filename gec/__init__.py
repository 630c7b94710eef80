"""Graceful Eviction Controller (GEC).

Keeps a workload running on a cluster the scheduler has decided to leave
until the replacement placement is confirmed elsewhere, then drops the
eviction bookkeeping:
 - eviction assessment (safety-net timeout + migration-confirmed fast path)
 - retry scheduling until the next eviction deadline
 - a watch-driven, rate-limited reconcile loop with optimistic writes

The decision functions are pure; everything with I/O is injected.
"""
