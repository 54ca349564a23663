"""Clearing engine: revenue share, constraints, clearing passes and reputation."""
