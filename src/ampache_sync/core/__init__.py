"""Sync orchestration and its concurrency primitives.

- concurrency: bounded slot pool for parallel batch fetches
- syncer: full, background and targeted synchronization
"""

__all__: list[str] = []
