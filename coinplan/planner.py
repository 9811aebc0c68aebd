"""Planning how to satisfy a taproot descriptor from a set of assets."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .keys import DescriptorKey
from .plan import (
    TAPSCRIPT_LEAF_VERSION,
    Assets,
    LockTime,
    Plan,
    Sequence,
    Target,
    TrDescriptor,
    TrSpend,
)
from .template import PlanKey, TemplateItem, TemplateKind


class TermKind(Enum):
    """The kind of a miniscript fragment."""

    TRUE = "1"
    FALSE = "0"
    PK_K = "pk_k"
    PK_H = "pk_h"
    RAW_PK_H = "expr_raw_pkh"
    AFTER = "after"
    OLDER = "older"
    SHA256 = "sha256"
    HASH256 = "hash256"
    RIPEMD160 = "ripemd160"
    HASH160 = "hash160"
    ALT = "a"
    SWAP = "s"
    CHECK = "c"
    DUP_IF = "d"
    VERIFY = "v"
    NON_ZERO = "j"
    ZERO_NOT_EQUAL = "n"
    AND_V = "and_v"
    AND_B = "and_b"
    AND_OR = "andor"
    OR_B = "or_b"
    OR_D = "or_d"
    OR_C = "or_c"
    OR_I = "or_i"
    THRESH = "thresh"
    MULTI = "multi"
    MULTI_A = "multi_a"


_WRAPPERS = frozenset(
    {
        TermKind.ALT,
        TermKind.SWAP,
        TermKind.CHECK,
        TermKind.VERIFY,
        TermKind.NON_ZERO,
        TermKind.ZERO_NOT_EQUAL,
        TermKind.DUP_IF,
    }
)
_BINARY = frozenset(
    {TermKind.AND_V, TermKind.AND_B, TermKind.OR_B, TermKind.OR_D, TermKind.OR_C, TermKind.OR_I}
)
_KEYED = frozenset({TermKind.PK_K, TermKind.PK_H})

# hash fragment -> (assets field, template step kind)
_HASHES = {
    TermKind.SHA256: ("sha256", TemplateKind.SHA256),
    TermKind.HASH256: ("hash256", TemplateKind.HASH256),
    TermKind.RIPEMD160: ("ripemd160", TemplateKind.RIPEMD160),
    TermKind.HASH160: ("hash160", TemplateKind.HASH160),
}

_UNSUPPORTED = frozenset(
    {
        TermKind.AND_OR,
        TermKind.OR_B,
        TermKind.OR_D,
        TermKind.OR_C,
        TermKind.THRESH,
        TermKind.MULTI,
        TermKind.MULTI_A,
    }
)


@dataclass(frozen=True)
class Term:
    """A miniscript fragment with its operands."""

    kind: TermKind
    key: DescriptorKey | None = None
    locktime: LockTime | None = None
    sequence: Sequence | None = None
    image: bytes | None = None
    children: tuple["Term", ...] = ()

    def __post_init__(self) -> None:
        if self.kind in _KEYED and self.key is None:
            raise ValueError(f"{self.kind.value} needs a key")
        if self.kind is TermKind.AFTER and self.locktime is None:
            raise ValueError("after needs a locktime")
        if self.kind is TermKind.OLDER and self.sequence is None:
            raise ValueError("older needs a sequence")
        if self.kind in _HASHES and self.image is None:
            raise ValueError(f"{self.kind.value} needs an image")
        if self.kind in _WRAPPERS and len(self.children) != 1:
            raise ValueError(f"{self.kind.value} wraps exactly one fragment")
        if self.kind in _BINARY and len(self.children) != 2:
            raise ValueError(f"{self.kind.value} takes exactly two fragments")


@dataclass
class TermPlan:
    """A partial plan for a fragment: timelocks it needs and its witness steps."""

    min_locktime: LockTime | None = None
    min_sequence: Sequence | None = None
    template: list[TemplateItem] = field(default_factory=list)

    def combine(self, other: "TermPlan") -> "TermPlan | None":
        """Join two plans that must both be satisfied; None if their timelocks conflict."""
        if self.min_locktime is not None and other.min_locktime is not None:
            if not self.min_locktime.is_same_unit(other.min_locktime):
                return None
            min_locktime = max(self.min_locktime, other.min_locktime, key=lambda lt: lt.value)
        else:
            min_locktime = self.min_locktime or other.min_locktime

        if self.min_sequence is not None and other.min_sequence is not None:
            if self.min_sequence.is_height_locked() != other.min_sequence.is_height_locked():
                return None
            min_sequence = max(self.min_sequence, other.min_sequence, key=lambda s: s.value)
        else:
            min_sequence = self.min_sequence or other.min_sequence

        return TermPlan(
            min_locktime=min_locktime,
            min_sequence=min_sequence,
            template=[*self.template, *other.template],
        )

    def expected_size(self) -> int:
        """Sum of the expected witness sizes of the steps."""
        return sum(step.expected_size() for step in self.template)


def _find_asset_key(assets: Assets, key: DescriptorKey) -> PlanKey | None:
    for asset_key in assets.keys:
        hint = asset_key.can_derive(key)
        if hint is not None:
            return PlanKey(asset_key=asset_key, derivation_hint=hint, descriptor_key=key)
    return None


def plan_steps(term: Term, assets: Assets) -> TermPlan | None:
    """Plan the cheapest satisfaction of ``term`` with ``assets``; None if impossible."""
    kind = term.kind

    if kind in _UNSUPPORTED:
        raise ValueError(f"planning {kind.value} fragments is not supported")

    if kind is TermKind.TRUE:
        return TermPlan()
    if kind is TermKind.FALSE or kind is TermKind.RAW_PK_H:
        return None

    if kind in _KEYED:
        assert term.key is not None
        plan_key = _find_asset_key(assets, term.key)
        if plan_key is None:
            return None
        steps = [TemplateItem.sign(plan_key)]
        if kind is TermKind.PK_H:
            steps.append(TemplateItem.pk(term.key))
        return TermPlan(template=steps)

    if kind is TermKind.AFTER:
        max_locktime = assets.max_locktime
        if max_locktime is None:
            return None
        if max_locktime.is_block_height:
            height, time = max_locktime.value, 0
        else:
            height, time = 0, max_locktime.value
        if max_locktime.is_satisfied_by(height, time):
            return TermPlan(min_locktime=term.locktime)
        return None

    if kind is TermKind.OLDER:
        max_sequence = assets.txo_age
        older = term.sequence
        assert older is not None
        if max_sequence is None:
            return None
        if (
            max_sequence.is_height_locked() == older.is_height_locked()
            and max_sequence.value >= older.value
        ):
            return TermPlan(min_sequence=older)
        return None

    if kind in _HASHES:
        field_name, step_kind = _HASHES[kind]
        assert term.image is not None
        if term.image in getattr(assets, field_name):
            return TermPlan(template=[TemplateItem.hash_image(step_kind, term.image)])
        return None

    if kind is TermKind.DUP_IF:
        plan = plan_steps(term.children[0], assets)
        if plan is None:
            return None
        plan.template.append(TemplateItem.one())
        return plan

    if kind in _WRAPPERS:
        return plan_steps(term.children[0], assets)

    if kind in (TermKind.AND_V, TermKind.AND_B):
        lhs = plan_steps(term.children[0], assets)
        if lhs is None:
            return None
        rhs = plan_steps(term.children[1], assets)
        if rhs is None:
            return None
        return lhs.combine(rhs)

    # OR_I: choose the cheaper branch that can be satisfied
    lplan = plan_steps(term.children[0], assets)
    if lplan is not None:
        lplan.template.append(TemplateItem.one())
    rplan = plan_steps(term.children[1], assets)
    if rplan is not None:
        rplan.template.append(TemplateItem.zero())
    if lplan is not None and rplan is not None:
        return lplan if lplan.expected_size() <= rplan.expected_size() else rplan
    return lplan if lplan is not None else rplan


def plan_satisfaction_tr(tr: TrDescriptor, assets: Assets) -> Plan | None:
    """Plan a taproot spend, preferring the key path over any script leaf."""
    internal = _find_asset_key(assets, tr.internal_key)
    if internal is not None:
        return Plan(
            template=[TemplateItem.sign(internal)],
            target=Target.segwitv1(tr, TrSpend.key_spend()),
        )

    plans = []
    for _, leaf in tr.iter_scripts():
        if leaf.node is None:
            continue
        term_plan = plan_steps(leaf.node, assets)
        if term_plan is not None:
            plans.append((leaf, term_plan))
    if not plans:
        return None

    leaf, best = min(plans, key=lambda item: item[1].expected_size())
    return Plan(
        template=best.template,
        target=Target.segwitv1(tr, TrSpend.leaf_spend(leaf.script, TAPSCRIPT_LEAF_VERSION)),
        set_locktime=best.min_locktime,
        set_sequence=best.min_sequence,
    )


def plan_satisfaction(desc: Any, assets: Assets) -> Plan | None:
    """Plan a spend of ``desc``; only taproot descriptors are supported."""
    if isinstance(desc, TrDescriptor):
        return plan_satisfaction_tr(desc, assets)
    raise ValueError(f"planning {type(desc).__name__} descriptors is not supported")