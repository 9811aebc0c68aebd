import dataclasses
import math
from datetime import timedelta

import pytest

from coinplan.bnb import Bnb, BranchStrategy, coin_select_bnb
from coinplan.coin_selector import (
    CoinSelector,
    CoinSelectorOpt,
    ExcessStrategyKind,
    TxOut,
    WeightedValue,
)

P2TR_SCRIPT = b"\x51\x20" + bytes(32)
TR_KEYSPEND_SATISFACTION_WEIGHT = 70


def gen_candidate(value):
    return WeightedValue.from_satisfaction(value, TR_KEYSPEND_SATISFACTION_WEIGHT, True)


def gen_weighted_values(out, count, value):
    out.extend(gen_candidate(value) for _ in range(count))


def gen_opts(value):
    opts = CoinSelectorOpt.fund_outputs(
        [TxOut(value, P2TR_SCRIPT)],
        TxOut(0, P2TR_SCRIPT),
        TR_KEYSPEND_SATISFACTION_WEIGHT,
    )
    return dataclasses.replace(opts, target_value=value)


def evaluate_bnb(selector, max_tries):
    """Run BnB and finish the result; None when there is no solution."""
    result = coin_select_bnb(max_tries, selector.copy())
    if result is None:
        return None
    return result.finish()


def feerate_offset(selection, opts, kind):
    return selection.excess_strategies[kind].feerate() - opts.target_feerate


def test_branch_strategy_will_continue():
    assert BranchStrategy.CONTINUE.will_continue() is True
    assert BranchStrategy.SKIP_INCLUSION.will_continue() is True
    assert BranchStrategy.SKIP_BOTH.will_continue() is False


def test_advertise_new_score_keeps_lower_or_equal():
    candidates = [WeightedValue(1000, 100)]
    opts = CoinSelectorOpt(target_value=500, target_feerate=0.0)
    bnb = Bnb(CoinSelector(candidates, opts), [], 10)
    assert bnb.advertise_new_score(10) is True
    assert bnb.advertise_new_score(11) is False
    assert bnb.best_score == 10
    assert bnb.advertise_new_score(3) is True
    assert bnb.best_score == 3


def test_forward_and_backtrack_track_remaining_values():
    candidates = [WeightedValue(1000, 100), WeightedValue(500, 100)]
    opts = CoinSelectorOpt(target_value=500, target_feerate=0.0)
    selector = CoinSelector(candidates, opts)
    bnb = Bnb(selector, list(enumerate(candidates)), 100)
    assert (bnb.rem_abs, bnb.rem_eff) == (1500, 1500)

    bnb.forward(False)
    bnb.pool_pos += 1
    assert bnb.selection.is_selected(0)
    assert bnb.rem_abs == 500

    bnb.forward(True)
    bnb.pool_pos += 1
    assert not bnb.selection.is_selected(1)
    assert bnb.rem_abs == 0

    assert bnb.backtrack() is True
    assert bnb.pool_pos == 0
    assert bnb.selection.is_empty()
    assert bnb.rem_abs == 500

    bnb.pool_pos = 1
    assert bnb.backtrack() is False
    assert bnb.rem_abs == 1500
    assert bnb.rem_eff == 1500


def test_iterate_rejects_continue_past_pool_end():
    candidates = [WeightedValue(1000, 100)]
    opts = CoinSelectorOpt(target_value=500, target_feerate=0.0)
    bnb = Bnb(CoinSelector(candidates, opts), [], 100)
    with pytest.raises(RuntimeError):
        next(bnb.iterate(lambda _: (BranchStrategy.CONTINUE, None)))


def test_invalid_limit_type():
    candidates = [gen_candidate(100_000)]
    selector = CoinSelector(candidates, gen_opts(50_000))
    with pytest.raises(TypeError):
        coin_select_bnb("10", selector)


def test_negative_round_limit():
    candidates = [gen_candidate(100_000)]
    selector = CoinSelector(candidates, gen_opts(50_000))
    with pytest.raises(ValueError):
        coin_select_bnb(-1, selector)


def test_not_enough_coins():
    candidates = [gen_candidate(100_000), gen_candidate(100_000)]
    opts = gen_opts(200_000)
    assert coin_select_bnb(10_000, CoinSelector(candidates, opts)) is None


def test_exactly_enough_coins_preselected():
    candidates = [gen_candidate(100_000), gen_candidate(100_000), gen_candidate(100_000)]
    opts = dataclasses.replace(gen_opts(200_000), target_feerate=0.0)
    selector = CoinSelector(candidates, opts)
    selector.select(0)
    selector.select(1)

    selection = evaluate_bnb(selector, 10_000)
    assert selection is not None
    assert selection.selected == (0, 1)
    assert len(selection.excess_strategies) == 1
    assert math.floor(feerate_offset(selection, opts, ExcessStrategyKind.TO_FEE)) == 0


def test_cost_of_change():
    candidates = [gen_candidate(200_000), gen_candidate(200_000), gen_candidate(200_000)]
    opts = gen_opts(0)

    fee_from_inputs = math.ceil(candidates[0].weight * opts.target_feerate) * 2
    fee_from_template = math.ceil((opts.base_weight + 2) * opts.target_feerate)

    lowest_opts = dataclasses.replace(
        opts,
        target_value=400_000 - fee_from_inputs - fee_from_template - opts.drain_waste(),
    )
    highest_opts = dataclasses.replace(
        opts, target_value=400_000 - fee_from_inputs - fee_from_template
    )

    lowest = evaluate_bnb(CoinSelector(candidates, lowest_opts), 10_000)
    assert lowest is not None
    assert len(lowest.selected) == 2
    assert len(lowest.excess_strategies) == 1
    assert math.floor(feerate_offset(lowest, lowest_opts, ExcessStrategyKind.TO_FEE)) == 0

    highest = evaluate_bnb(CoinSelector(candidates, highest_opts), 10_000)
    assert highest is not None
    assert len(highest.selected) == 2
    assert len(highest.excess_strategies) == 1
    assert math.floor(feerate_offset(highest, highest_opts, ExcessStrategyKind.TO_FEE)) == 0

    loob_opts = dataclasses.replace(lowest_opts, target_value=lowest_opts.target_value - 1)
    assert evaluate_bnb(CoinSelector(candidates, loob_opts), 10_000) is None

    uoob_opts = dataclasses.replace(highest_opts, target_value=highest_opts.target_value + 1)
    assert evaluate_bnb(CoinSelector(candidates, uoob_opts), 10_000) is None


TRY_SELECT_VALUES = [300_000, 300_000, 300_000, 200_000, 200_000]


@pytest.mark.parametrize(
    "target, expect_solution, expect_selected",
    [
        (100_000, False, 0),
        (200_000, True, 1),
        (300_000, True, 1),
        (500_000, True, 2),
        (1_000_000, True, 4),
        (1_200_000, False, 0),
        (1_300_000, True, 5),
        (1_400_000, False, 0),
    ],
)
def test_try_select(target, expect_solution, expect_selected):
    candidates = [gen_candidate(v) for v in TRY_SELECT_VALUES]
    opts = dataclasses.replace(gen_opts(target), target_feerate=0.0)
    selection = evaluate_bnb(CoinSelector(candidates, opts), 10_000)
    assert (selection is not None) == expect_solution
    if expect_solution:
        assert feerate_offset(selection, opts, ExcessStrategyKind.TO_FEE) == 0.0
        assert len(selection.selected) == expect_selected


def test_duration_limit_finds_solution():
    candidates = [gen_candidate(v) for v in TRY_SELECT_VALUES]
    opts = dataclasses.replace(gen_opts(500_000), target_feerate=0.0)
    result = coin_select_bnb(timedelta(seconds=10), CoinSelector(candidates, opts))
    assert result is not None
    assert result.selected_count() == 2
    assert result.selected_absolute_value() == 500_000


def test_early_bailout_optimization():
    candidates = [gen_candidate(125_000), gen_candidate(125_000), gen_candidate(50_000)]
    candidates.extend(gen_candidate(100_000) for _ in range(1000))
    opts = dataclasses.replace(gen_opts(300_000), target_feerate=0.0)

    selection = evaluate_bnb(CoinSelector(candidates, opts), 1100)
    assert selection is not None
    assert selection.selected == (0, 1, 2)


def test_should_exhaust_iteration():
    max_tries = 1000
    candidates = [gen_candidate(10_000) for _ in range(max_tries + 1)]
    opts = gen_opts(10_001 * max_tries)
    assert evaluate_bnb(CoinSelector(candidates, opts), max_tries) is None


def _min_absolute_fee_candidates():
    candidates = []
    gen_weighted_values(candidates, 5, 10_000)
    gen_weighted_values(candidates, 5, 20_000)
    gen_weighted_values(candidates, 5, 30_000)
    gen_weighted_values(candidates, 10, 10_300)
    gen_weighted_values(candidates, 10, 10_500)
    gen_weighted_values(candidates, 10, 10_700)
    gen_weighted_values(candidates, 10, 10_900)
    gen_weighted_values(candidates, 10, 11_000)
    gen_weighted_values(candidates, 10, 12_000)
    gen_weighted_values(candidates, 10, 13_000)
    return candidates


@pytest.mark.parametrize("fee_factor", [1, 2, 10, 40, 80, 120])
def test_min_absolute_fee(fee_factor):
    candidates = _min_absolute_fee_candidates()
    opts = dataclasses.replace(gen_opts(100_000), min_absolute_fee=fee_factor * 31)

    selection = evaluate_bnb(CoinSelector(candidates, opts), 21_000)
    assert selection is None or (
        selection.excess_strategies[ExcessStrategyKind.TO_FEE].fee
        >= opts.min_absolute_fee
        and len(selection.excess_strategies) == 1
    )


def test_feerate_difference():
    candidates = []
    gen_weighted_values(candidates, 10, 2_000)
    gen_weighted_values(candidates, 10, 5_000)
    gen_weighted_values(candidates, 10, 20_000)

    decreasing_opts = dataclasses.replace(
        gen_opts(100_000), target_feerate=1.25, long_term_feerate=0.25
    )
    increasing_opts = dataclasses.replace(
        gen_opts(100_000), target_feerate=0.25, long_term_feerate=1.25
    )

    decreasing = evaluate_bnb(CoinSelector(candidates, decreasing_opts), 21_000)
    increasing = evaluate_bnb(CoinSelector(candidates, increasing_opts), 21_000)
    assert decreasing is not None
    assert increasing is not None
    assert len(decreasing.selected) < len(increasing.selected)