"""
Caching proxy service package.

The proxy answers any path from a local disk cache, filling misses and
stale entries from a single upstream origin and keeping served entries warm
with background refreshes.

Structure:
- app.main: FastAPI app, catch-all request handler and service wiring.
- app.adapters: HTTP client for the origin.
- app.caching: Key normalization, disk store, locking, single-flight,
  refresh queue and the orchestrator that binds them.
"""
