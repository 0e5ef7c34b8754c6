"""Integration tests: the engine and API against a real database."""
