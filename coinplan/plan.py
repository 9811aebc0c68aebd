"""Spending plans: a chosen spending path of a descriptor and how to complete it."""

from __future__ import annotations

import hashlib
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from .coin_selector import varint_size
from .keys import DescriptorKey
from .template import (
    RequiredSignatures,
    Requirements,
    SatisfactionMaterial,
    TemplateItem,
    TemplateKind,
)

TAPSCRIPT_LEAF_VERSION = 0xC0
LOCKTIME_THRESHOLD = 500_000_000

_SEQUENCE_DISABLE_FLAG = 1 << 31
_SEQUENCE_LOCK_TYPE_MASK = 1 << 22

_PREIMAGE_FIELDS = {
    TemplateKind.SHA256: "sha256_preimages",
    TemplateKind.HASH256: "hash256_preimages",
    TemplateKind.RIPEMD160: "ripemd160_preimages",
    TemplateKind.HASH160: "hash160_preimages",
}

_IMAGE_FIELDS = {
    TemplateKind.SHA256: "sha256_images",
    TemplateKind.HASH256: "hash256_images",
    TemplateKind.RIPEMD160: "ripemd160_images",
    TemplateKind.HASH160: "hash160_images",
}

# secp256k1 curve parameters
_P = 2**256 - 2**32 - 977
_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
_G = (
    0x79BE667EF9DCBBAC55A06295CE870B07029BFCDB2DCE28D959F2815B16F81798,
    0x483ADA7726A3C4655DA4FBFC0E1108A8FD17B448A68554199C47D08FFB10D4B8,
)

_Point = Union[tuple[int, int], None]


def varint_len(v: int) -> int:
    """Size in bytes of the compact-size integer encoding ``v``."""
    return varint_size(v)


def _compact_size(n: int) -> bytes:
    if n < 0xFD:
        return bytes([n])
    if n <= 0xFFFF:
        return b"\xfd" + n.to_bytes(2, "little")
    if n <= 0xFFFFFFFF:
        return b"\xfe" + n.to_bytes(4, "little")
    return b"\xff" + n.to_bytes(8, "little")


def _tagged_hash(tag: str, msg: bytes) -> bytes:
    tag_hash = hashlib.sha256(tag.encode()).digest()
    return hashlib.sha256(tag_hash + tag_hash + msg).digest()


def tap_leaf_hash(script: bytes, leaf_version: int) -> bytes:
    """Tagged hash of a taproot leaf script with its leaf version."""
    script = bytes(script)
    return _tagged_hash(
        "TapLeaf", bytes([leaf_version & 0xFF]) + _compact_size(len(script)) + script
    )


def _tap_branch_hash(a: bytes, b: bytes) -> bytes:
    lo, hi = sorted((a, b))
    return _tagged_hash("TapBranch", lo + hi)


def _point_add(a: _Point, b: _Point) -> _Point:
    if a is None:
        return b
    if b is None:
        return a
    if a[0] == b[0]:
        if (a[1] + b[1]) % _P == 0:
            return None
        lam = 3 * a[0] * a[0] * pow(2 * a[1], -1, _P) % _P
    else:
        lam = (b[1] - a[1]) * pow(b[0] - a[0], -1, _P) % _P
    x = (lam * lam - a[0] - b[0]) % _P
    y = (lam * (a[0] - x) - a[1]) % _P
    return (x, y)


def _point_mul(k: int, point: _Point) -> _Point:
    result: _Point = None
    addend = point
    while k:
        if k & 1:
            result = _point_add(result, addend)
        addend = _point_add(addend, addend)
        k >>= 1
    return result


def _lift_x(x: int) -> tuple[int, int]:
    if x >= _P:
        raise ValueError("x coordinate is not a field element")
    c = (pow(x, 3, _P) + 7) % _P
    y = pow(c, (_P + 1) // 4, _P)
    if y * y % _P != c:
        raise ValueError("x coordinate is not on the curve")
    return (x, y if y % 2 == 0 else _P - y)


def _x_only(key: DescriptorKey) -> bytes:
    pk = bytes(key.public_key)
    if len(pk) == 32:
        return pk
    if len(pk) == 33:
        return pk[1:]
    raise ValueError(f"public key of {len(pk)} bytes cannot be used for taproot")


class LockTime:
    """An absolute locktime: a block height below the threshold, else a timestamp."""

    __slots__ = ("value",)

    def __init__(self, value: int) -> None:
        if not 0 <= value <= 0xFFFFFFFF:
            raise ValueError(f"locktime {value} out of range")
        self.value = value

    def __repr__(self) -> str:
        return f"LockTime({self.value})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, LockTime) and other.value == self.value

    def __hash__(self) -> int:
        return hash(("locktime", self.value))

    @property
    def is_block_height(self) -> bool:
        return self.value < LOCKTIME_THRESHOLD

    def is_same_unit(self, other: "LockTime") -> bool:
        """Whether both locktimes are heights or both are timestamps."""
        return self.is_block_height == other.is_block_height

    def is_satisfied_by(self, height: int, time: int) -> bool:
        """Whether a block at ``height`` with timestamp ``time`` satisfies this locktime."""
        if self.is_block_height:
            return self.value <= height
        return self.value <= time


class Sequence:
    """An input's nSequence value."""

    __slots__ = ("value",)

    def __init__(self, value: int) -> None:
        if not 0 <= value <= 0xFFFFFFFF:
            raise ValueError(f"sequence {value} out of range")
        self.value = value

    def __repr__(self) -> str:
        return f"Sequence({self.value:#x})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Sequence) and other.value == self.value

    def __hash__(self) -> int:
        return hash(("sequence", self.value))

    def is_height_locked(self) -> bool:
        """Whether this is a relative locktime measured in blocks."""
        return (
            self.value & _SEQUENCE_DISABLE_FLAG == 0
            and self.value & _SEQUENCE_LOCK_TYPE_MASK == 0
        )


@dataclass(frozen=True)
class TapLeaf:
    """A script leaf of a taproot tree; ``node`` is its parsed policy, if any."""

    script: bytes
    node: Any = None
    leaf_version: int = TAPSCRIPT_LEAF_VERSION

    def leaf_hash(self) -> bytes:
        return tap_leaf_hash(self.script, self.leaf_version)


@dataclass(frozen=True)
class TapBranch:
    """An inner node of a taproot tree."""

    left: "TapLeaf | TapBranch"
    right: "TapLeaf | TapBranch"


TapTree = Union[TapLeaf, TapBranch]


def _node_hash(node: TapTree) -> bytes:
    if isinstance(node, TapLeaf):
        return node.leaf_hash()
    return _tap_branch_hash(_node_hash(node.left), _node_hash(node.right))


def _merkle_path(node: TapTree, script: bytes, leaf_version: int | None) -> list[bytes] | None:
    if isinstance(node, TapLeaf):
        matches = node.script == script and (
            leaf_version is None or node.leaf_version == leaf_version
        )
        return [] if matches else None
    left = _merkle_path(node.left, script, leaf_version)
    if left is not None:
        return left + [_node_hash(node.right)]
    right = _merkle_path(node.right, script, leaf_version)
    if right is not None:
        return right + [_node_hash(node.left)]
    return None


@dataclass(frozen=True)
class TrDescriptor:
    """A taproot descriptor: an internal key and an optional script tree."""

    internal_key: DescriptorKey
    tree: TapTree | None = None

    def iter_scripts(self) -> Iterator[tuple[int, TapLeaf]]:
        """Yield (depth, leaf) for every leaf, depth first, left before right."""
        if self.tree is None:
            return
        stack: list[tuple[int, TapTree]] = [(0, self.tree)]
        while stack:
            depth, node = stack.pop()
            if isinstance(node, TapLeaf):
                yield depth, node
            else:
                stack.append((depth + 1, node.right))
                stack.append((depth + 1, node.left))

    def merkle_root(self) -> bytes | None:
        """Root hash of the script tree, or None without one."""
        if self.tree is None:
            return None
        return _node_hash(self.tree)

    def _path(self, script: bytes, leaf_version: int | None) -> tuple[TapLeaf, list[bytes]]:
        script = bytes(script)
        path = None if self.tree is None else _merkle_path(self.tree, script, leaf_version)
        if path is None:
            raise KeyError("script is not a leaf of this taproot tree")
        leaf = next(
            leaf
            for _, leaf in self.iter_scripts()
            if leaf.script == script
            and (leaf_version is None or leaf.leaf_version == leaf_version)
        )
        return leaf, path

    def _control_block_size(self, script: bytes, leaf_version: int | None) -> int:
        _, path = self._path(script, leaf_version)
        return 33 + 32 * len(path)

    def _control_block(self, script: bytes, leaf_version: int | None) -> bytes:
        leaf, path = self._path(script, leaf_version)
        internal = _x_only(self.internal_key)
        point = _lift_x(int.from_bytes(internal, "big"))
        tweak = int.from_bytes(
            _tagged_hash("TapTweak", internal + (self.merkle_root() or b"")), "big"
        )
        if tweak >= _N:
            raise ValueError("taproot tweak out of range")
        output = _point_add(point, _point_mul(tweak, _G))
        if output is None:
            raise ValueError("taproot output key is the point at infinity")
        parity = output[1] & 1
        return bytes([(leaf.leaf_version & 0xFE) | parity]) + internal + b"".join(path)

    def control_block(self, script: bytes) -> bytes:
        """Serialized control block for spending the leaf with ``script``."""
        return self._control_block(script, None)


class WitnessVersion(Enum):
    """Segregated witness version of a spending target."""

    V0 = 0
    V1 = 1


@dataclass(frozen=True)
class TrSpend:
    """How a taproot output is spent: by key, or by the leaf ``script``."""

    script: bytes | None = None
    leaf_version: int = TAPSCRIPT_LEAF_VERSION

    @classmethod
    def key_spend(cls) -> "TrSpend":
        return cls()

    @classmethod
    def leaf_spend(
        cls, script: bytes, leaf_version: int = TAPSCRIPT_LEAF_VERSION
    ) -> "TrSpend":
        return cls(bytes(script), leaf_version)

    @property
    def is_key_spend(self) -> bool:
        return self.script is None


@dataclass(frozen=True)
class Target:
    """The kind of output a plan spends; the default is a legacy output."""

    version: WitnessVersion | None = None
    script_code: bytes | None = None
    tr: TrDescriptor | None = None
    tr_plan: TrSpend | None = None

    @classmethod
    def legacy(cls) -> "Target":
        return cls()

    @classmethod
    def segwitv0(cls, script_code: bytes) -> "Target":
        return cls(WitnessVersion.V0, script_code=script_code)

    @classmethod
    def segwitv1(cls, tr: TrDescriptor, tr_plan: TrSpend) -> "Target":
        return cls(WitnessVersion.V1, tr=tr, tr_plan=tr_plan)


@dataclass
class Assets:
    """What the planner may use: keys, output age, locktime and known hash images."""

    keys: list[Any] = field(default_factory=list)
    txo_age: Sequence | None = None
    max_locktime: LockTime | None = None
    sha256: list[bytes] = field(default_factory=list)
    hash256: list[bytes] = field(default_factory=list)
    ripemd160: list[bytes] = field(default_factory=list)
    hash160: list[bytes] = field(default_factory=list)


@dataclass
class Complete:
    """A completed plan: what to put in the input's scriptSig and witness."""

    final_script_sig: bytes | None = None
    final_script_witness: list[bytes] | None = None


@dataclass
class Incomplete:
    """A plan that still needs the given requirements."""

    requirements: Requirements


def _is_satisfied(step: TemplateItem, auth_data: SatisfactionMaterial) -> bool:
    if step.kind is TemplateKind.SIGN:
        assert step.plan_key is not None
        return step.plan_key.descriptor_key in auth_data.schnorr_sigs
    if step.kind in _PREIMAGE_FIELDS:
        return step.image in getattr(auth_data, _PREIMAGE_FIELDS[step.kind])
    return True


@dataclass
class Plan:
    """A particular spending path for a descriptor."""

    template: list[TemplateItem] = field(default_factory=list)
    target: Target = field(default_factory=Target)
    set_locktime: LockTime | None = None
    set_sequence: Sequence | None = None

    def _taproot(self) -> tuple[TrDescriptor, TrSpend]:
        target = self.target
        if target.version is not WitnessVersion.V1 or target.tr is None or target.tr_plan is None:
            raise ValueError("only taproot plans are supported")
        return target.tr, target.tr_plan

    def expected_weight(self) -> int:
        """The expected satisfaction weight of the plan once completed."""
        if self.target.version is None:
            raise ValueError("expected weight of legacy plans is not supported")
        sizes = [step.expected_size() for step in self.template]
        if self.target.version is WitnessVersion.V1:
            tr, tr_plan = self._taproot()
            if not tr_plan.is_key_spend:
                assert tr_plan.script is not None
                sizes.append(len(tr_plan.script))
                sizes.append(tr._control_block_size(tr_plan.script, tr_plan.leaf_version))
        witness_size = varint_len(len(sizes)) + sum(varint_len(s) + s for s in sizes)
        script_sig_size = 1
        return script_sig_size * 4 + witness_size

    def requirements(self) -> Requirements:
        """What is still needed to complete the plan with no material at hand."""
        state = self.try_complete(SatisfactionMaterial())
        if isinstance(state, Incomplete):
            return state.requirements
        return Requirements()

    def try_complete(self, auth_data: SatisfactionMaterial) -> Complete | Incomplete:
        """Complete the plan with ``auth_data``, or report what is missing."""
        tr, tr_plan = self._taproot()
        unsatisfied = [step for step in self.template if not _is_satisfied(step, auth_data)]

        if not unsatisfied:
            witness = [
                element
                for step in self.template
                for element in step.to_witness_stack(auth_data)
            ]
            if not tr_plan.is_key_spend:
                assert tr_plan.script is not None
                witness.append(bytes(tr_plan.script))
                witness.append(tr._control_block(tr_plan.script, tr_plan.leaf_version))
            return Complete(final_script_sig=None, final_script_witness=witness)

        requirements = Requirements()
        if tr_plan.is_key_spend:
            if len(self.template) != 1 or self.template[0].kind is not TemplateKind.SIGN:
                raise RuntimeError("a taproot key spend has exactly one sign step")
            plan_key = self.template[0].plan_key
            assert plan_key is not None
            requirements.signatures = RequiredSignatures.tap_key(plan_key, tr.merkle_root())
            return Incomplete(requirements)

        assert tr_plan.script is not None
        requirements.signatures = RequiredSignatures.tap_script(
            tap_leaf_hash(tr_plan.script, tr_plan.leaf_version), []
        )
        for step in unsatisfied:
            if step.kind is TemplateKind.SIGN:
                assert step.plan_key is not None
                requirements.signatures.keys.append(step.plan_key)
            elif step.kind in _IMAGE_FIELDS:
                assert step.image is not None
                getattr(requirements, _IMAGE_FIELDS[step.kind]).add(step.image)
        return Incomplete(requirements)

    def witness_version(self) -> WitnessVersion | None:
        """Witness version of the plan, None for legacy."""
        return self.target.version

    def required_locktime(self) -> LockTime | None:
        """The minimum locktime the spending transaction must set."""
        return self.set_locktime

    def required_sequence(self) -> Sequence | None:
        """The minimum sequence the input must set."""
        return self.set_sequence

    def min_version(self) -> int:
        """The minimum transaction version the plan needs."""
        return 2 if self.set_sequence is not None else 1