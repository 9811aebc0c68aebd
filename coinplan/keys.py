"""Descriptor keys, key origins and working out how one key derives another."""

from __future__ import annotations

from dataclasses import dataclass

DerivationPath = tuple[int, ...]


@dataclass(frozen=True)
class KeySource:
    """A key origin: a master key fingerprint and the path from that master key."""

    fingerprint: bytes
    path: DerivationPath = ()

    def can_derive(self, key: "DescriptorKey") -> DerivationPath | None:
        """Path from this origin to ``key``, or None if it is not derivable from here."""
        if not key.is_xpub:
            if key.origin is None:
                return None
            return path_to_child(self, key.origin, None)
        return path_to_child(self, key.effective_origin(), key.derivation_path)


@dataclass(frozen=True)
class DescriptorKey:
    """A public key as it appears in a descriptor.

    ``public_key`` is the serialized concrete public key. A key with an
    ``xpub_fingerprint`` is an extended key with ``derivation_path`` below it;
    a key without one is a single key.
    """

    public_key: bytes
    origin: KeySource | None = None
    xpub_fingerprint: bytes | None = None
    derivation_path: DerivationPath = ()

    @property
    def is_xpub(self) -> bool:
        return self.xpub_fingerprint is not None

    def effective_origin(self) -> KeySource | None:
        """The declared origin; an extended key without one is its own master."""
        if self.origin is not None:
            return self.origin
        if self.xpub_fingerprint is not None:
            return KeySource(self.xpub_fingerprint, ())
        return None

    def can_derive(self, key: "DescriptorKey") -> DerivationPath | None:
        """Path from this key to ``key``, or None if this key cannot derive it."""
        if self == key:
            return ()
        if self.is_xpub:
            origin = self.effective_origin()
            assert origin is not None
            return origin.can_derive(key)
        return None


def path_to_child(
    parent: KeySource,
    child_origin: KeySource,
    child_derivation: DerivationPath | None,
) -> DerivationPath | None:
    """Path from ``parent`` to a child with the given origin and further derivation."""
    if parent.fingerprint != child_origin.fingerprint:
        return None
    prefix_len = len(parent.path)
    if tuple(child_origin.path[:prefix_len]) != tuple(parent.path):
        return None
    remaining = tuple(child_origin.path[prefix_len:])
    return remaining + tuple(child_derivation or ())