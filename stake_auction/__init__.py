"""Stake auction clearing engine.

Allocates a finite pool of delegable stake across validators through a
multi-round auction that clears at a single yield, subject to concentration,
collateral, declared-maximum and reputation caps.
"""

__version__ = "0.1.0"
