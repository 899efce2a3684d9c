"""
Performance testing package.

Short real load runs of the built-in profiles against the demo target
served on a local port.  Profiles are scaled down so the suite finishes
in seconds; the thresholds in :file:`thresholds.yml` are the same
override file CI passes to ``loadgate run --thresholds``.

Key Concepts Demonstrated:
- Running the engine end to end over real sockets
- YAML threshold overrides as the CI gate
- Exit codes as the pass/fail contract
"""
