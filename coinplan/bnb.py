"""Branch and bound coin selection over a CoinSelector."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from datetime import timedelta
from enum import Enum
from itertools import islice, takewhile

from .coin_selector import CoinSelector, WeightedValue, _f32, _to_u64

I64_MAX = 2**63 - 1

PoolEntry = tuple[int, WeightedValue]


class BranchStrategy(Enum):
    """How the search proceeds from the current node."""

    CONTINUE = "continue"
    """Explore the subtrees of this node, inclusion branch first."""
    SKIP_INCLUSION = "skip_inclusion"
    """Explore only the omission branch of this node."""
    SKIP_BOTH = "skip_both"
    """Skip both branches of this node and backtrack."""

    def will_continue(self) -> bool:
        """Whether the search moves forward from this node."""
        return self is not BranchStrategy.SKIP_BOTH


class Bnb:
    """State of a branch and bound search."""

    def __init__(
        self, selector: CoinSelector, pool: Sequence[PoolEntry], max_score: int
    ) -> None:
        feerate = selector.opts.target_feerate
        self.pool: list[PoolEntry] = list(pool)
        self.pool_pos = 0
        self.best_score = max_score
        self.selection = selector
        self.rem_abs = sum(c.value for _, c in self.pool)
        self.rem_eff = sum(c.effective_value(feerate) for _, c in self.pool)

    def iterate(
        self, strategy: Callable[["Bnb"], tuple[BranchStrategy, int | None]]
    ) -> Iterator[CoinSelector | None]:
        """Walk the search tree, yielding a copy of each new best selection, else None.

        ``strategy`` inspects the current node and returns the branching strategy
        together with a score when the node is a candidate solution.
        """
        while True:
            branch, score = strategy(self)

            found: CoinSelector | None = None
            if score is not None and self.advertise_new_score(score):
                found = self.selection.copy()

            if branch.will_continue() and self.pool_pos >= len(self.pool):
                raise RuntimeError(
                    "faulty strategy: asked to continue past the end of the pool "
                    f"(pool_len={len(self.pool)}, pool_pos={self.pool_pos})"
                )

            done = False
            if branch is BranchStrategy.CONTINUE:
                self.forward(False)
            elif branch is BranchStrategy.SKIP_INCLUSION:
                self.forward(True)
            elif not self.backtrack():
                done = True

            self.pool_pos += 1

            if done:
                if found is not None:
                    yield found
                return
            yield found

    def backtrack(self) -> bool:
        """Move to the omission branch of the last selected node; False if none is left."""
        feerate = self.selection.opts.target_feerate
        for pos in reversed(range(self.pool_pos)):
            index, candidate = self.pool[pos]
            if self.selection.is_selected(index):
                self.pool_pos = pos
                self.selection.deselect(index)
                return True
            self.rem_abs += candidate.value
            self.rem_eff += candidate.effective_value(feerate)
        return False

    def forward(self, skip: bool) -> None:
        """Go down this branch, including the current candidate unless ``skip``."""
        index, candidate = self.pool[self.pool_pos]
        self.rem_abs -= candidate.value
        self.rem_eff -= candidate.effective_value(self.selection.opts.target_feerate)
        if not skip:
            self.selection.select(index)

    def advertise_new_score(self, score: int) -> bool:
        """Keep ``score`` if it is no worse than the best so far; return whether kept."""
        if score <= self.best_score:
            self.best_score = score
            return True
        return False


def coin_select_bnb(
    limit: int | timedelta, selector: CoinSelector
) -> CoinSelector | None:
    """Search for the selection with the least waste that needs no change output.

    ``limit`` is either a number of rounds or a ``timedelta`` bounding the search
    time. Returns None when no solution is found within the limit.
    """
    if isinstance(limit, timedelta):
        seconds = limit.total_seconds()
    elif isinstance(limit, int) and not isinstance(limit, bool):
        if limit < 0:
            raise ValueError("round limit must not be negative")
        seconds = None
    else:
        raise TypeError("limit must be an int number of rounds or a timedelta")

    opts = selector.opts
    feerate = opts.target_feerate

    pool = sorted(
        (
            (index, c)
            for index, c in selector.unselected()
            if c.effective_value(feerate) > 0
        ),
        key=lambda entry: entry[1].effective_value(feerate),
        reverse=True,
    )

    feerate_decreases = _f32(feerate) > _f32(opts.effective_long_term_feerate())

    target_abs = (opts.target_value or 0) + opts.min_absolute_fee
    target_eff = selector.effective_target()

    upper_bound_abs = target_abs + _to_u64(_f32(opts.drain_weight * _f32(feerate)))
    upper_bound_eff = target_eff + opts.drain_waste()

    def strategy(bnb: Bnb) -> tuple[BranchStrategy, int | None]:
        selection = bnb.selection
        selected_abs = selection.selected_absolute_value()
        selected_eff = selection.selected_effective_value()

        # not enough left to reach the target
        if selected_abs + bnb.rem_abs < target_abs or selected_eff + bnb.rem_eff < target_eff:
            return BranchStrategy.SKIP_BOTH, None

        # already beyond the upper bounds
        if selected_abs > upper_bound_abs and selected_eff > upper_bound_eff:
            return BranchStrategy.SKIP_BOTH, None

        selected_waste = selection.selected_waste()

        # with a decreasing feerate, waste only grows with each further selection
        if feerate_decreases and selected_waste > bnb.best_score:
            return BranchStrategy.SKIP_BOTH, None

        if selected_abs >= target_abs and selected_eff >= target_eff:
            return BranchStrategy.SKIP_BOTH, selected_waste + selection.current_excess()

        # an omitted predecessor identical to this candidate makes including it redundant
        if bnb.pool_pos > 0 and not selection.is_empty():
            _, candidate = bnb.pool[bnb.pool_pos]
            prev_index, prev_candidate = bnb.pool[bnb.pool_pos - 1]
            if (
                not selection.is_selected(prev_index)
                and candidate.value == prev_candidate.value
                and candidate.weight == prev_candidate.weight
            ):
                return BranchStrategy.SKIP_INCLUSION, None

        return BranchStrategy.CONTINUE, None

    selected_abs = selector.selected_absolute_value()
    selected_eff = selector.selected_effective_value()

    bnb = Bnb(selector, pool, I64_MAX)

    if selected_abs + bnb.rem_abs < target_abs or selected_eff + bnb.rem_eff < target_eff:
        return None

    rounds: Iterable[CoinSelector | None]
    if seconds is None:
        rounds = islice(bnb.iterate(strategy), limit)
    else:
        start = time.monotonic()
        rounds = takewhile(
            lambda _: time.monotonic() - start <= seconds, bnb.iterate(strategy)
        )

    best: CoinSelector | None = None
    for found in rounds:
        if found is not None:
            best = found
    return best