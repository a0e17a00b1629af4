"""
kvstore Test Suite.

This package contains:
- unit/: Unit tests (one module per component, no external dependencies)
- integration/: Integration tests (KeyValueTemplate over the map adapter)
"""
