# tests/property/__init__.py
"""Property-based tests for Fenestra.

Properties that must hold for every input, not only the examples we think of:

- engine/: window tiling, backoff bounds, merge order independence,
  expression parsing, and the circuit breaker state machine
"""
