"""Constraint layer — stake caps enforced while the auction clears.

Concentration caps (country, infrastructure provider), collateral-backed
capacity, declared maxima, reputation limits and per-validator ceilings
are rebuilt from the allocation state after every round. Diagnostics
explain which cap stopped a validator and how much headroom is left.

This module is DETERMINISTIC: ties are broken by an explicit type order.
"""
