"""
Jobs infrastructure for cook mode background processing.

This package provides the durable job queue with:
- Database-backed FIFO queue with lease-based dispatch and visibility timeout
- Registry-based pluggable handlers with staged progress reporting
- Exponential backoff retries and terminal failure handling
- Progress and lifecycle events over the pub/sub bus
"""
