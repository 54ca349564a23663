"""Tests for the validator model's carried-over and identity fields."""

from stake_auction.models.validator import Validator, ValidatorHistory


class TestValidatorFields:
    def test_identity_has_no_client_version(self) -> None:
        validator = Validator(vote_account="a", client_version="1.18.0")
        dumped = validator.model_dump()
        assert "client_version" not in dumped
        assert {"vote_account", "country", "aso"} <= dumped.keys()

    def test_previous_blacklist_unknown_without_history(self) -> None:
        assert Validator(vote_account="a").last_blacklisted is None
        assert ValidatorHistory(vote_account="a", reputation=1.0).last_blacklisted is None
