"""Coin selection primitives: candidates, options, selector and selection results."""

from __future__ import annotations

import math
import struct
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TypeVar

T = TypeVar("T")

# Txin "base" fields: outpoint (32 + 4) and nSequence (4), in weight units.
TXIN_BASE_WEIGHT = (32 + 4 + 4) * 4


def _f32(x: float) -> float:
    """Round a float to single precision."""
    return struct.unpack("<f", struct.pack("<f", x))[0]


def _to_u64(x: float) -> int:
    """Truncate a float towards zero, saturating at zero."""
    if math.isnan(x):
        return 0
    return max(0, int(x))


def varint_size(v: int) -> int:
    """Size in bytes of the compact-size integer encoding ``v``."""
    if v < 0xFD:
        return 1
    if v <= 0xFFFF:
        return 3
    if v <= 0xFFFFFFFF:
        return 5
    return 9


@dataclass(frozen=True)
class TxOut:
    """A transaction output: an amount and its locking script."""

    value: int
    script_pubkey: bytes = b""

    def serialized_size(self) -> int:
        return 8 + varint_size(len(self.script_pubkey)) + len(self.script_pubkey)


def _input_free_tx_weight(outputs: Sequence[TxOut]) -> int:
    """Weight of a transaction that has the given outputs and no inputs."""
    size = (
        4  # version
        + varint_size(0)
        + varint_size(len(outputs))
        + sum(out.serialized_size() for out in outputs)
        + 4  # lock time
    )
    return size * 4


@dataclass(frozen=True)
class WeightedValue:
    """An input candidate: one UTXO or a group of UTXOs spent together."""

    value: int
    weight: int
    input_count: int = 1
    is_segwit: bool = False

    @classmethod
    def from_satisfaction(
        cls, value: int, satisfaction_weight: int, is_segwit: bool
    ) -> "WeightedValue":
        """Candidate for a single input with the given satisfaction weight."""
        return cls(
            value=value,
            weight=TXIN_BASE_WEIGHT + satisfaction_weight,
            input_count=1,
            is_segwit=is_segwit,
        )

    def effective_value(self, effective_feerate: float) -> int:
        """Value minus the (rounded-up) fee of spending this candidate."""
        fee = math.ceil(_f32(self.weight * _f32(effective_feerate)))
        return self.value - int(fee)


@dataclass(frozen=True)
class CoinSelectorOpt:
    """Parameters of a coin selection."""

    target_value: int | None = None
    max_extra_target: int = 0
    target_feerate: float = 0.25
    long_term_feerate: float | None = None
    min_absolute_fee: int = 0
    base_weight: int = 0
    drain_weight: int = 0
    spend_drain_weight: int = 0
    min_drain_value: int = 0

    @classmethod
    def from_weights(
        cls, base_weight: int, drain_weight: int, spend_drain_weight: int
    ) -> "CoinSelectorOpt":
        """Options at 1 sat/vb with the drain dust limit as minimum drain value."""
        target_feerate = 0.25
        min_drain_value = 3 * _to_u64(
            _f32((drain_weight + spend_drain_weight) * _f32(target_feerate))
        )
        return cls(
            target_value=None,
            max_extra_target=0,
            target_feerate=target_feerate,
            long_term_feerate=None,
            min_absolute_fee=0,
            base_weight=base_weight,
            drain_weight=drain_weight,
            spend_drain_weight=spend_drain_weight,
            min_drain_value=min_drain_value,
        )

    @classmethod
    def fund_outputs(
        cls,
        txouts: Sequence[TxOut],
        drain_output: TxOut,
        drain_satisfaction_weight: int,
    ) -> "CoinSelectorOpt":
        """Options for funding ``txouts`` with ``drain_output`` as change."""
        outputs = list(txouts)
        base_weight = _input_free_tx_weight(outputs)
        drain_weight = _input_free_tx_weight([*outputs, drain_output]) - base_weight
        base = cls.from_weights(
            base_weight, drain_weight, TXIN_BASE_WEIGHT + drain_satisfaction_weight
        )
        target_value = sum(out.value for out in outputs) if outputs else None
        return CoinSelectorOpt(
            target_value=target_value,
            max_extra_target=base.max_extra_target,
            target_feerate=base.target_feerate,
            long_term_feerate=base.long_term_feerate,
            min_absolute_fee=base.min_absolute_fee,
            base_weight=base.base_weight,
            drain_weight=base.drain_weight,
            spend_drain_weight=base.spend_drain_weight,
            min_drain_value=base.min_drain_value,
        )

    def effective_long_term_feerate(self) -> float:
        """The long-term feerate, falling back to the target feerate."""
        if self.long_term_feerate is None:
            return self.target_feerate
        return self.long_term_feerate

    def drain_waste(self) -> int:
        """Waste of adding a drain output now and spending it later."""
        now = _f32(self.drain_weight * _f32(self.target_feerate))
        later = _f32(self.spend_drain_weight * _f32(self.effective_long_term_feerate()))
        return int(_f32(now + later))


class SelectionConstraint(Enum):
    """A constraint that a selection can fail to satisfy."""

    TARGET_VALUE = "target_value"
    TARGET_FEE = "target_fee"
    MIN_ABSOLUTE_FEE = "min_absolute_fee"
    MIN_DRAIN_VALUE = "min_drain_value"

    def __str__(self) -> str:
        return self.value


class SelectionError(Exception):
    """Raised when the selected coins do not satisfy every constraint."""

    def __init__(self, selected: int, missing: int, constraint: SelectionConstraint):
        self.selected = selected
        self.missing = missing
        self.constraint = constraint
        super().__init__(
            f"insufficient coins selected; selected={selected}, "
            f"missing={missing}, unsatisfied_constraint={constraint}"
        )


class ExcessStrategyKind(Enum):
    """Where the excess of a selection goes."""

    TO_FEE = "to_fee"
    TO_RECIPIENT = "to_recipient"
    TO_DRAIN = "to_drain"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ExcessStrategy:
    """Outcome of one way of handling a selection's excess."""

    recipient_value: int | None
    drain_value: int | None
    fee: int
    weight: int
    waste: int

    def feerate(self) -> float:
        """Feerate in sats per weight unit."""
        return _f32(self.fee / self.weight)


@dataclass
class Selection:
    """A finished selection with its possible excess strategies."""

    selected: tuple[int, ...]
    excess: int
    excess_strategies: dict[ExcessStrategyKind, ExcessStrategy] = field(
        default_factory=dict
    )

    def apply_selection(self, candidates: Sequence[T]) -> Iterator[T]:
        """Yield the items of ``candidates`` at the selected indexes."""
        return (candidates[i] for i in self.selected)

    def best_strategy(self) -> tuple[ExcessStrategyKind, ExcessStrategy]:
        """The excess strategy with the least waste."""
        if not self.excess_strategies:
            raise ValueError("selection has no excess strategy")
        return min(self.excess_strategies.items(), key=lambda item: item[1].waste)


class CoinSelector:
    """Selects and deselects candidates and evaluates the current selection."""

    __slots__ = ("candidates", "opts", "_selected")

    def __init__(self, candidates: Sequence[WeightedValue], opts: CoinSelectorOpt):
        self.candidates = candidates
        self.opts = opts
        self._selected: set[int] = set()

    def __repr__(self) -> str:
        return f"CoinSelector(selected={sorted(self._selected)!r}, opts={self.opts!r})"

    def copy(self) -> "CoinSelector":
        """An independent selector over the same candidates and options."""
        other = CoinSelector(self.candidates, self.opts)
        other._selected = set(self._selected)
        return other

    def candidate(self, index: int) -> WeightedValue:
        return self.candidates[index]

    def select(self, index: int) -> bool:
        """Select a candidate; return whether it was newly selected."""
        if not 0 <= index < len(self.candidates):
            raise IndexError(f"candidate index {index} out of range")
        if index in self._selected:
            return False
        self._selected.add(index)
        return True

    def deselect(self, index: int) -> bool:
        """Deselect a candidate; return whether it had been selected."""
        if index in self._selected:
            self._selected.remove(index)
            return True
        return False

    def is_selected(self, index: int) -> bool:
        return index in self._selected

    def is_empty(self) -> bool:
        return not self._selected

    def selected_weight(self) -> int:
        """Weight sum of all selected inputs."""
        return sum(wv.weight for _, wv in self.selected())

    def selected_effective_value(self) -> int:
        """Effective value sum of all selected inputs."""
        feerate = self.opts.target_feerate
        return sum(wv.effective_value(feerate) for _, wv in self.selected())

    def selected_absolute_value(self) -> int:
        """Absolute value sum of all selected inputs."""
        return sum(wv.value for _, wv in self.selected())

    def selected_waste(self) -> int:
        """Waste of all selected inputs."""
        rate_diff = _f32(
            _f32(self.opts.target_feerate)
            - _f32(self.opts.effective_long_term_feerate())
        )
        return int(_f32(self.selected_weight() * rate_diff))

    def current_weight(self) -> int:
        """Weight of the template transaction plus the selected inputs."""
        witness_header_extra = 2 if any(wv.is_segwit for _, wv in self.selected()) else 0
        input_count = sum(wv.input_count for _, wv in self.selected())
        vin_count_extra = (varint_size(input_count) - 1) * 4
        return (
            self.opts.base_weight
            + self.selected_weight()
            + witness_header_extra
            + vin_count_extra
        )

    def current_excess(self) -> int:
        return self.selected_effective_value() - self.effective_target()

    def effective_target(self) -> int:
        """Target value plus the fee of the worst-case template transaction."""
        has_segwit = any(c.is_segwit for c in self.candidates)
        max_input_count = sum(c.input_count for c in self.candidates)
        effective_base_weight = (
            self.opts.base_weight
            + (2 if has_segwit else 0)
            + (varint_size(max_input_count) - 1) * 4
        )
        base_fee = math.ceil(
            _f32(effective_base_weight * _f32(self.opts.target_feerate))
        )
        return (self.opts.target_value or 0) + int(base_fee)

    def selected_count(self) -> int:
        return len(self._selected)

    def selected(self) -> Iterator[tuple[int, WeightedValue]]:
        """Selected (index, candidate) pairs in index order."""
        return ((i, self.candidates[i]) for i in sorted(self._selected))

    def unselected(self) -> Iterator[tuple[int, WeightedValue]]:
        """Unselected (index, candidate) pairs in index order."""
        return (
            (i, wv) for i, wv in enumerate(self.candidates) if i not in self._selected
        )

    def selected_indexes(self) -> Iterator[int]:
        return iter(sorted(self._selected))

    def unselected_indexes(self) -> Iterator[int]:
        return (i for i in range(len(self.candidates)) if i not in self._selected)

    def all_selected(self) -> bool:
        return len(self._selected) == len(self.candidates)

    def select_all(self) -> None:
        self._selected = set(range(len(self.candidates)))

    def select_until_finished(self) -> Selection:
        """Select unselected candidates in order until the selection can finish."""
        try:
            return self.finish()
        except SelectionError as exc:
            error = exc
        for index in list(self.unselected_indexes()):
            self.select(index)
            try:
                return self.finish()
            except SelectionError as exc:
                error = exc
        raise error

    def finish(self) -> Selection:
        """Evaluate the selection, raising SelectionError if it is insufficient."""
        opts = self.opts
        weight_without_drain = self.current_weight()
        weight_with_drain = weight_without_drain + opts.drain_weight

        feerate = _f32(opts.target_feerate)
        fee_without_drain = int(math.ceil(_f32(weight_without_drain * feerate)))
        fee_with_drain = int(math.ceil(_f32(weight_with_drain * feerate)))

        target_value = opts.target_value or 0
        selected = self.selected_absolute_value()

        def missing(required: int) -> int:
            return max(0, required - selected)

        constraints = [
            (SelectionConstraint.TARGET_VALUE, missing(target_value)),
            (SelectionConstraint.TARGET_FEE, missing(target_value + fee_without_drain)),
            (
                SelectionConstraint.MIN_ABSOLUTE_FEE,
                missing(target_value + opts.min_absolute_fee),
            ),
            (
                SelectionConstraint.MIN_DRAIN_VALUE,
                missing(fee_with_drain + opts.min_drain_value)
                if opts.target_value is None
                else 0,
            ),
        ]
        worst: tuple[SelectionConstraint, int] | None = None
        for constraint, amount in constraints:
            if amount > 0 and (worst is None or amount >= worst[1]):
                worst = (constraint, amount)
        if worst is not None:
            raise SelectionError(selected, worst[1], worst[0])

        inputs_minus_outputs = selected - target_value

        fee_without_drain = max(fee_without_drain, opts.min_absolute_fee)
        fee_with_drain = max(fee_with_drain, opts.min_absolute_fee)

        excess_without_drain = inputs_minus_outputs - fee_without_drain
        input_waste = self.selected_waste()

        strategies: dict[ExcessStrategyKind, ExcessStrategy] = {}

        if opts.target_value is not None:
            strategies[ExcessStrategyKind.TO_FEE] = ExcessStrategy(
                recipient_value=opts.target_value,
                drain_value=None,
                fee=fee_without_drain + excess_without_drain,
                weight=weight_without_drain,
                waste=input_waste + excess_without_drain,
            )
            if excess_without_drain > 0 and opts.max_extra_target > 0:
                extra_recipient_value = min(opts.max_extra_target, excess_without_drain)
                extra_fee = excess_without_drain - extra_recipient_value
                strategies[ExcessStrategyKind.TO_RECIPIENT] = ExcessStrategy(
                    recipient_value=opts.target_value + extra_recipient_value,
                    drain_value=None,
                    fee=fee_without_drain + extra_fee,
                    weight=weight_without_drain,
                    waste=input_waste + extra_fee,
                )

        if (
            fee_with_drain >= opts.min_absolute_fee
            and inputs_minus_outputs >= fee_with_drain + opts.min_drain_value
        ):
            strategies[ExcessStrategyKind.TO_DRAIN] = ExcessStrategy(
                recipient_value=opts.target_value,
                drain_value=max(0, inputs_minus_outputs - fee_with_drain),
                fee=fee_with_drain,
                weight=weight_with_drain,
                waste=input_waste + opts.drain_waste(),
            )

        return Selection(
            selected=tuple(sorted(self._selected)),
            excess=excess_without_drain,
            excess_strategies=strategies,
        )