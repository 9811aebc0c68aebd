"""Plan templates, satisfaction material and the requirements of a plan."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .coin_selector import varint_size
from .keys import DerivationPath, DescriptorKey


@dataclass(frozen=True)
class PlanKey:
    """An asset key, the descriptor key it can sign for and how to derive it."""

    asset_key: Any
    derivation_hint: DerivationPath
    descriptor_key: DescriptorKey


@dataclass
class SatisfactionMaterial:
    """Signatures and hash pre-images that can be used to complete a plan."""

    schnorr_sigs: dict[DescriptorKey, bytes] = field(default_factory=dict)
    ecdsa_sigs: dict[DescriptorKey, bytes] = field(default_factory=dict)
    sha256_preimages: dict[bytes, bytes] = field(default_factory=dict)
    hash160_preimages: dict[bytes, bytes] = field(default_factory=dict)
    hash256_preimages: dict[bytes, bytes] = field(default_factory=dict)
    ripemd160_preimages: dict[bytes, bytes] = field(default_factory=dict)


class TemplateKind(Enum):
    """The kind of a witness template step."""

    SIGN = "sign"
    PK = "pk"
    ONE = "one"
    ZERO = "zero"
    SHA256 = "sha256"
    HASH256 = "hash256"
    RIPEMD160 = "ripemd160"
    HASH160 = "hash160"


_HASH_KINDS = {
    TemplateKind.SHA256: "sha256_preimages",
    TemplateKind.HASH256: "hash256_preimages",
    TemplateKind.RIPEMD160: "ripemd160_preimages",
    TemplateKind.HASH160: "hash160_preimages",
}


@dataclass(frozen=True)
class TemplateItem:
    """One step of a plan's witness template."""

    kind: TemplateKind
    plan_key: PlanKey | None = None
    key: DescriptorKey | None = None
    image: bytes | None = None

    def __post_init__(self) -> None:
        if self.kind is TemplateKind.SIGN and self.plan_key is None:
            raise ValueError("a sign step needs a plan key")
        if self.kind is TemplateKind.PK and self.key is None:
            raise ValueError("a pk step needs a key")
        if self.kind in _HASH_KINDS and self.image is None:
            raise ValueError(f"a {self.kind.value} step needs an image")

    @classmethod
    def sign(cls, plan_key: PlanKey) -> "TemplateItem":
        return cls(TemplateKind.SIGN, plan_key=plan_key)

    @classmethod
    def pk(cls, key: DescriptorKey) -> "TemplateItem":
        return cls(TemplateKind.PK, key=key)

    @classmethod
    def one(cls) -> "TemplateItem":
        return cls(TemplateKind.ONE)

    @classmethod
    def zero(cls) -> "TemplateItem":
        return cls(TemplateKind.ZERO)

    @classmethod
    def hash_image(cls, kind: TemplateKind, image: bytes) -> "TemplateItem":
        if kind not in _HASH_KINDS:
            raise ValueError(f"{kind.value} is not a hash step")
        return cls(kind, image=image)

    def expected_size(self) -> int:
        """Expected size in bytes of this step's witness element."""
        if self.kind is TemplateKind.SIGN:
            return 64
        if self.kind is TemplateKind.PK:
            return 32
        if self.kind is TemplateKind.ONE:
            return varint_size(1)
        if self.kind is TemplateKind.ZERO:
            return 0
        return 32

    def to_witness_stack(self, auth_data: SatisfactionMaterial) -> list[bytes]:
        """Witness elements for this step; KeyError if ``auth_data`` lacks them."""
        if self.kind is TemplateKind.SIGN:
            assert self.plan_key is not None
            return [bytes(auth_data.schnorr_sigs[self.plan_key.descriptor_key])]
        if self.kind is TemplateKind.PK:
            assert self.key is not None
            return [bytes(self.key.public_key)]
        if self.kind is TemplateKind.ONE:
            return [b"\x01"]
        if self.kind is TemplateKind.ZERO:
            return [b""]
        preimages: dict[bytes, bytes] = getattr(auth_data, _HASH_KINDS[self.kind])
        assert self.image is not None
        return [bytes(preimages[self.image])]


class SignatureKind(Enum):
    """Which kind of signatures a plan requires."""

    LEGACY = "legacy"
    SEGWITV0 = "segwitv0"
    TAP_KEY = "tap_key"
    TAP_SCRIPT = "tap_script"


@dataclass
class RequiredSignatures:
    """The signatures required to complete a plan.

    ``keys`` holds the keys to sign with; a taproot key spend has exactly one,
    the internal key, and may carry a ``merkle_root``. A taproot script spend
    carries the ``leaf_hash`` of the script being used.
    """

    kind: SignatureKind = SignatureKind.LEGACY
    keys: list[PlanKey] = field(default_factory=list)
    merkle_root: bytes | None = None
    leaf_hash: bytes | None = None

    @classmethod
    def tap_key(cls, plan_key: PlanKey, merkle_root: bytes | None) -> "RequiredSignatures":
        return cls(SignatureKind.TAP_KEY, keys=[plan_key], merkle_root=merkle_root)

    @classmethod
    def tap_script(
        cls, leaf_hash: bytes, plan_keys: list[PlanKey] | None = None
    ) -> "RequiredSignatures":
        return cls(SignatureKind.TAP_SCRIPT, keys=list(plan_keys or []), leaf_hash=leaf_hash)

    @property
    def plan_key(self) -> PlanKey:
        """The internal key of a taproot key spend."""
        if self.kind is not SignatureKind.TAP_KEY or len(self.keys) != 1:
            raise ValueError("only a taproot key spend has a single plan key")
        return self.keys[0]


@dataclass
class Requirements:
    """Signatures and hash pre-images that must be provided to complete a plan."""

    signatures: RequiredSignatures = field(default_factory=RequiredSignatures)
    sha256_images: set[bytes] = field(default_factory=set)
    hash160_images: set[bytes] = field(default_factory=set)
    hash256_images: set[bytes] = field(default_factory=set)
    ripemd160_images: set[bytes] = field(default_factory=set)

    def requires_hash_preimages(self) -> bool:
        """Whether any hash pre-images are required."""
        return bool(
            self.sha256_images
            or self.hash160_images
            or self.hash256_images
            or self.ripemd160_images
        )