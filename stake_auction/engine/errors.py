"""Hard-fail errors raised while clearing an auction.

Both kinds abort the run immediately; a partial allocation is never
returned.

  ConstraintConfigurationError -- a validator subset is touched by no
                                  constraint, so no cap can be derived
  NumericInvariantError        -- a fee, penalty, ratio or yield came out
                                  NaN, infinite or negative
"""


class AuctionError(RuntimeError):
    """Base for all clearing-engine errors."""


class ConstraintConfigurationError(AuctionError):
    """No constraint touches the validators asked about."""


class NumericInvariantError(AuctionError, ArithmeticError):
    """A computed quantity violated its finiteness or sign invariant."""
