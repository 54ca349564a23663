"""Tests for the clearing engine: both phases, postprocessing and state handling."""

import math

import pytest

from stake_auction.engine.clearing import EPSILON, NO_CLEARING_PRICE
from stake_auction.engine.events import EventKind, RecordingEventSink
from stake_auction.models.common import ConstraintType


def _targets(engine) -> list[float]:
    return [v.auction_stake.auction_target_sol for v in engine.data.validators]


def _three_tiers(make_validator) -> list:
    return [
        make_validator("a", bid_pmpe=0.3),
        make_validator("b", bid_pmpe=0.2),
        make_validator("c", bid_pmpe=0.0),
    ]


@pytest.fixture()
def capped_config(auction_config):
    return auction_config.model_copy(update={"max_pool_tvl_share_per_validator_dec": 0.5})


# ---------------------------------------------------------------------------
# Phase B: auction pool
# ---------------------------------------------------------------------------


class TestAuctionDistribution:
    def test_tiers_filled_from_highest(self, make_validator, make_engine, capped_config) -> None:
        engine = make_engine(
            _three_tiers(make_validator), auction_tvl_sol=3000.0, config=capped_config,
        )
        clearing = engine.distribute_auction_stake()
        assert _targets(engine) == pytest.approx([1500.0, 1500.0, 0.0])
        assert clearing == pytest.approx(1.2)

    def test_conservation(self, make_validator, make_engine, capped_config) -> None:
        engine = make_engine(
            _three_tiers(make_validator), auction_tvl_sol=3000.0, config=capped_config,
        )
        engine.solve()
        amounts = engine.data.stake_amounts
        assert amounts.auction_remaining_sol >= 0
        assert sum(_targets(engine)) + amounts.auction_remaining_sol == pytest.approx(
            amounts.auction_tvl_sol, abs=EPSILON,
        )

    def test_binding_constraint_recorded(self, make_validator, make_engine, capped_config) -> None:
        engine = make_engine(
            _three_tiers(make_validator), auction_tvl_sol=3000.0, config=capped_config,
        )
        engine.solve()
        binding = engine.data.validators[0].last_cap_constraint
        assert binding is not None
        assert binding.constraint_type == ConstraintType.VALIDATOR

    def test_equal_tier_split_evenly(self, make_validator, make_engine) -> None:
        engine = make_engine(
            [make_validator("a", bid_pmpe=0.1), make_validator("b", bid_pmpe=0.1)],
            auction_tvl_sol=1000.0,
        )
        engine.solve()
        assert _targets(engine) == pytest.approx([500.0, 500.0])

    def test_ineligible_and_blocked_skipped(self, make_validator, make_engine) -> None:
        engine = make_engine(
            [
                make_validator("a", bid_pmpe=0.5),
                make_validator("b", bid_pmpe=0.4, auction_eligible=False),
                make_validator("c", bid_pmpe=0.1),
            ],
            auction_tvl_sol=900.0,
        )
        engine.block("a")
        clearing = engine.solve()
        assert _targets(engine) == pytest.approx([0.0, 0.0, 900.0])
        assert clearing == pytest.approx(1.1)

    def test_block_unknown_validator(self, make_validator, make_engine) -> None:
        engine = make_engine([make_validator("a")], auction_tvl_sol=100.0)
        with pytest.raises(KeyError):
            engine.block("zz")

    def test_no_clearing_price(self, make_validator, make_engine) -> None:
        engine = make_engine(
            [make_validator("a", auction_eligible=False)], auction_tvl_sol=1000.0,
        )
        assert engine.solve() == NO_CLEARING_PRICE
        assert engine.data.stake_amounts.auction_remaining_sol == 1000.0

    def test_caps_never_exceeded(self, make_validator, make_engine, capped_config) -> None:
        validators = [
            make_validator("a", bid_pmpe=0.3, bond_balance_sol=0.5),
            make_validator("b", bid_pmpe=0.2),
        ]
        engine = make_engine(validators, auction_tvl_sol=3000.0, config=capped_config)
        engine.solve()
        # bond of 0.5 SOL at 1.3 PMPE backs 0.5 / 0.0013 SOL
        assert engine.data.validators[0].auction_stake.auction_target_sol == pytest.approx(
            0.5 / 0.0013,
        )
        assert engine.data.validators[0].last_cap_constraint.constraint_type == ConstraintType.BOND
        for constraint in engine.constraints.constraints:
            assert constraint.pool_left_to_cap_sol >= -EPSILON


# ---------------------------------------------------------------------------
# Phase A: directed pool
# ---------------------------------------------------------------------------


class TestDirectedDistribution:
    def test_leftover_folded_into_auction_pool(self, make_validator, make_engine) -> None:
        validator = make_validator(
            "a", auction_eligible=False, directed_eligible=True,
            directed_stake_ceiling_sol=300.0,
        )
        engine = make_engine([validator], directed_tvl_sol=1000.0, auction_tvl_sol=500.0)
        engine.distribute_directed_stake()

        amounts = engine.data.stake_amounts
        assert engine.data.validators[0].auction_stake.directed_target_sol == pytest.approx(300.0)
        assert amounts.directed_remaining_sol == 0.0
        assert amounts.directed_tvl_sol == pytest.approx(300.0)
        assert amounts.auction_tvl_sol == pytest.approx(1200.0)
        assert amounts.auction_remaining_sol == pytest.approx(1200.0)

    def test_even_split(self, make_validator, make_engine) -> None:
        validators = [
            make_validator(name, directed_eligible=True, directed_stake_ceiling_sol=1e6)
            for name in ("a", "b", "c", "d")
        ]
        engine = make_engine(validators, directed_tvl_sol=1000.0)
        engine.distribute_directed_stake()
        assert [
            v.auction_stake.directed_target_sol for v in engine.data.validators
        ] == pytest.approx([250.0] * 4)

    def test_capped_member_releases_stake(self, make_validator, make_engine) -> None:
        validators = [
            make_validator("a", directed_eligible=True, directed_stake_ceiling_sol=100.0),
            make_validator("b", directed_eligible=True, directed_stake_ceiling_sol=1e6),
        ]
        engine = make_engine(validators, directed_tvl_sol=1000.0)
        engine.distribute_directed_stake()
        assert [
            v.auction_stake.directed_target_sol for v in engine.data.validators
        ] == pytest.approx([100.0, 900.0])


# ---------------------------------------------------------------------------
# State management
# ---------------------------------------------------------------------------


class TestReset:
    def test_restores_baseline(self, make_validator, make_engine, capped_config) -> None:
        engine = make_engine(
            _three_tiers(make_validator), auction_tvl_sol=3000.0, config=capped_config,
        )
        engine.solve()
        engine.reset()
        assert _targets(engine) == [0.0, 0.0, 0.0]
        assert engine.data.stake_amounts.auction_remaining_sol == 3000.0
        assert all(v.last_cap_constraint is None for v in engine.data.validators)

    def test_idempotent(self, make_validator, make_engine) -> None:
        engine = make_engine(_three_tiers(make_validator), auction_tvl_sol=3000.0)
        engine.solve()
        engine.reset()
        first = engine.data.stake_amounts.model_dump()
        engine.reset()
        assert engine.data.stake_amounts.model_dump() == first
        assert _targets(engine) == [0.0, 0.0, 0.0]

    def test_keeps_reputation(self, make_validator, make_engine) -> None:
        engine = make_engine([make_validator("a")], auction_tvl_sol=100.0)
        engine.data.validators[0].reputation.reputation = 42.0
        engine.reset()
        assert engine.data.validators[0].reputation.reputation == 42.0

    def test_repeated_solves_match(self, make_validator, make_engine, capped_config) -> None:
        engine = make_engine(
            _three_tiers(make_validator), auction_tvl_sol=3000.0, config=capped_config,
        )
        first_price = engine.solve()
        first = _targets(engine)
        engine.reset()
        assert engine.solve() == first_price
        assert _targets(engine) == first


class TestSnapshot:
    def test_restore_discards_later_changes(self, make_validator, make_engine) -> None:
        engine = make_engine([make_validator("a")], auction_tvl_sol=100.0)
        snapshot = engine.snapshot()
        engine.solve()
        engine.restore(snapshot)
        assert engine.data.validators[0].auction_stake.auction_target_sol == 0.0
        assert engine.data.stake_amounts.auction_remaining_sol == 100.0

    def test_snapshot_is_independent(self, make_validator, make_engine) -> None:
        engine = make_engine([make_validator("a")], auction_tvl_sol=100.0)
        snapshot = engine.snapshot()
        engine.restore(snapshot)
        engine.solve()
        assert snapshot.validators[0].auction_stake.auction_target_sol == 0.0


class TestFork:
    def test_fork_is_isolated(self, make_validator, make_engine) -> None:
        engine = make_engine([make_validator("a")], auction_tvl_sol=100.0)
        fork = engine.fork()
        fork.solve()
        assert fork.data.validators[0].auction_stake.auction_target_sol == pytest.approx(100.0)
        assert engine.data.validators[0].auction_stake.auction_target_sol == 0.0
        assert engine.data.stake_amounts.auction_remaining_sol == 100.0


# ---------------------------------------------------------------------------
# Postprocessing
# ---------------------------------------------------------------------------


class TestStakePriorities:
    def test_dense_rank_by_total(self, make_validator, make_engine) -> None:
        engine = make_engine([
            make_validator("a", bid_pmpe=0.3),
            make_validator("b", bid_pmpe=0.2),
            make_validator("c", bid_pmpe=0.3),
            make_validator("d", bid_pmpe=0.0),
        ])
        engine.set_stake_priorities()
        assert [v.stake_priority for v in engine.data.validators] == [1, 2, 1, 3]


class TestUnstakePriorities:
    def test_ordering(self, make_validator, make_engine) -> None:
        validators = [
            make_validator("ineligible", auction_eligible=False),
            make_validator("under_b", bond_balance_sol=0.5, delegated_stake_sol=1000.0),
            make_validator("under_c", bond_balance_sol=0.2, delegated_stake_sol=1000.0),
            make_validator("over", delegated_stake_sol=1000.0),
            make_validator("shrunk", delegated_stake_sol=1000.0),
        ]
        validators[1].bond.health = 0.5
        validators[2].bond.health = 0.2
        validators[3].bond.health = 2.0
        validators[3].auction_stake.auction_target_sol = 2000.0
        validators[4].bond.health = 3.0
        validators[4].auction_stake.auction_target_sol = 500.0
        engine = make_engine(validators)
        engine.set_unstake_priorities()
        assert [v.unstake_priority for v in engine.data.validators] == [0, 2, 1, 4, 3]


class TestEffectiveBidsAndSpend:
    def test_winners_and_losers(self, make_validator, make_engine, capped_config) -> None:
        engine = make_engine(
            _three_tiers(make_validator), auction_tvl_sol=3000.0, config=capped_config,
        )
        clearing = engine.solve()
        engine.set_auction_effective_bids(clearing)
        engine.set_eff_participating_bids(clearing)
        a, b, c = engine.data.validators
        assert a.rev_share.auction_effective_bid_pmpe == pytest.approx(0.2)
        assert b.rev_share.auction_effective_bid_pmpe == pytest.approx(0.2)
        assert c.rev_share.auction_effective_bid_pmpe == 0.0
        assert c.rev_share.eff_participating_bid_pmpe == pytest.approx(0.2)
        assert engine.total_spend_sol(clearing) == pytest.approx(0.6)

    def test_effective_bid_decomposition(self, make_validator, make_engine, capped_config) -> None:
        engine = make_engine(
            _three_tiers(make_validator), auction_tvl_sol=3000.0, config=capped_config,
        )
        clearing = engine.solve()
        engine.set_auction_effective_bids(clearing)
        for validator in engine.data.validators:
            rs = validator.rev_share
            if rs.total_pmpe >= clearing:
                assert rs.auction_effective_bid_pmpe == pytest.approx(
                    max(0.0, clearing - rs.inflation_pmpe - rs.mev_pmpe),
                )
            else:
                assert rs.auction_effective_bid_pmpe == rs.bid_pmpe


class TestPenaltiesWithoutClearing:
    def test_zero_penalties(self, make_validator, make_engine) -> None:
        validator = make_validator(
            "a", auction_eligible=False, blacklisted=True, last_blacklisted=False,
        )
        engine = make_engine([validator], auction_tvl_sol=100.0)
        clearing = engine.solve()
        engine.postprocess(clearing)
        rs = engine.data.validators[0].rev_share
        assert rs.bid_too_low_penalty_pmpe == 0.0
        assert rs.blacklist_penalty_pmpe == 0.0
        assert engine.data.validators[0].bid_too_low_penalty.coef == 0.0


class TestUndelegationTracking:
    def _engine(self, make_validator, make_engine, *, delegated, last, paid):
        validator = make_validator(
            "a", delegated_stake_sol=delegated, last_delegated_stake_sol=last,
            paid_undelegation_sol=paid,
        )
        return make_engine([validator])

    def test_large_delegation_resets(self, make_validator, make_engine) -> None:
        engine = self._engine(make_validator, make_engine, delegated=1200.0, last=1000.0, paid=500.0)
        engine.update_paid_undelegation()
        assert engine.data.validators[0].paid_undelegation_sol == 0.0

    def test_small_delegation_accumulates(self, make_validator, make_engine) -> None:
        engine = self._engine(make_validator, make_engine, delegated=1030.0, last=1000.0, paid=500.0)
        engine.update_paid_undelegation()
        assert engine.data.validators[0].paid_undelegation_sol == pytest.approx(530.0)

    def test_undelegation_goes_negative(self, make_validator, make_engine) -> None:
        engine = self._engine(make_validator, make_engine, delegated=700.0, last=1000.0, paid=100.0)
        engine.update_paid_undelegation()
        assert engine.data.validators[0].paid_undelegation_sol == pytest.approx(-200.0)

    def test_no_previous_delegation(self, make_validator, make_engine) -> None:
        engine = self._engine(make_validator, make_engine, delegated=700.0, last=None, paid=100.0)
        engine.update_paid_undelegation()
        assert engine.data.validators[0].paid_undelegation_sol == pytest.approx(100.0)


class TestExpectedMaxEffBids:
    def test_disabled_without_ratio(self, make_validator, make_engine) -> None:
        engine = make_engine([make_validator("a", bid_pmpe=0.5)], auction_tvl_sol=100.0)
        engine.update_expected_max_eff_bids()
        assert engine.data.validators[0].rev_share.expected_max_eff_bid_pmpe == 0.5

    def test_derated_by_estimated_clearing(
        self, make_validator, make_engine, auction_config,
    ) -> None:
        config = auction_config.model_copy(update={"expected_max_winning_bid_ratio": 0.5})
        sink = RecordingEventSink()
        engine = make_engine(
            [make_validator("a", bid_pmpe=0.5), make_validator("b", bid_pmpe=0.1)],
            auction_tvl_sol=100.0, config=config, events=sink,
        )
        engine.update_expected_max_eff_bids()
        # only "a" clears at 1.5; expected total = 1.0 + 0.5 * 0.5
        a, b = engine.data.validators
        assert a.rev_share.expected_max_eff_bid_pmpe == pytest.approx(0.25)
        assert b.rev_share.expected_max_eff_bid_pmpe == pytest.approx(0.1)
        assert _targets(engine) == [0.0, 0.0]
        [event] = sink.of_kind(EventKind.EXPECTED_BID_SET)
        assert event.fields["estimated_clearing_pmpe"] == pytest.approx(1.5)


class TestEvaluate:
    def test_result(self, make_validator, make_engine, capped_config) -> None:
        engine = make_engine(
            _three_tiers(make_validator), auction_tvl_sol=3000.0, config=capped_config,
        )
        result = engine.evaluate()
        assert result.clearing_pmpe == pytest.approx(1.2)
        assert result.total_spend_sol == pytest.approx(0.6)
        assert [v.stake_priority for v in result.auction_data.validators] == [1, 2, 3]
        assert all(
            math.isfinite(v.rev_share.bid_too_low_penalty_pmpe)
            for v in result.auction_data.validators
        )

    def test_events_emitted(self, make_validator, make_engine, capped_config) -> None:
        sink = RecordingEventSink(["a"])
        engine = make_engine(
            _three_tiers(make_validator), auction_tvl_sol=3000.0,
            config=capped_config, events=sink,
        )
        engine.evaluate()
        assert sink.of_kind(EventKind.CLEARING_PRICE_SET)
        assert sink.of_kind(EventKind.STATE_RESET)
        assert sink.for_validator("a")
