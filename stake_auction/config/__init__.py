"""Configuration: process settings and auction options."""

from stake_auction.config.auction import AuctionConfig
from stake_auction.config.settings import Settings, get_settings

__all__ = ["AuctionConfig", "Settings", "get_settings"]
