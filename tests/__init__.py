"""
Test suite for loadgate.

This package contains:
- unit/: Engine building blocks in isolation (stages, metrics, thresholds,
  scheduler, virtual users, reporting, security findings, CLI)
- integration/: Whole runs against a deterministic client and the demo
  target served over real HTTP
- performance/: Short end-to-end runs of the built-in profiles
"""
