"""
Provisioning job queue.

This package provides the database-backed queue that drives provisioning:
- JobStore with atomic lease/claim semantics (SKIP LOCKED on Postgres)
- Worker dispatching claimed jobs to registry-based handlers
- Reaper recovering jobs whose lease expired
"""
