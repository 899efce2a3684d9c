"""
Integration test package for loadgate.

These tests run real scheduler and VU threads, the requests-backed HTTP
client against a live socket, and the demo target's API through the
Flask test client. They demonstrate:
- End-to-end run gating (exit codes, thresholds, abort-on-fail)
- Cancellation latency bounds
- Fault injection on the target
- Response schema validation
"""
