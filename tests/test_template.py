import pytest

from coinplan.keys import DescriptorKey, KeySource
from coinplan.template import (
    PlanKey,
    RequiredSignatures,
    Requirements,
    SatisfactionMaterial,
    SignatureKind,
    TemplateItem,
    TemplateKind,
)

KEY = DescriptorKey(public_key=b"\x02" + b"\x11" * 32, origin=KeySource(b"\x01\x02\x03\x04", (0,)))
PLAN_KEY = PlanKey(asset_key="asset", derivation_hint=(0,), descriptor_key=KEY)
IMAGE = b"\xaa" * 32

HASH_KINDS = [TemplateKind.SHA256, TemplateKind.HASH256, TemplateKind.RIPEMD160, TemplateKind.HASH160]


def test_sign_expected_size():
    assert TemplateItem.sign(PLAN_KEY).expected_size() == 64


def test_pk_expected_size():
    assert TemplateItem.pk(KEY).expected_size() == 32


def test_one_and_zero_expected_size():
    assert TemplateItem.one().expected_size() == 1
    assert TemplateItem.zero().expected_size() == 0


@pytest.mark.parametrize("kind", HASH_KINDS)
def test_hash_expected_size(kind):
    assert TemplateItem.hash_image(kind, IMAGE).expected_size() == 32


def test_one_and_zero_witness():
    material = SatisfactionMaterial()
    assert TemplateItem.one().to_witness_stack(material) == [b"\x01"]
    assert TemplateItem.zero().to_witness_stack(material) == [b""]


def test_sign_witness_uses_schnorr_signature():
    sig = b"\x55" * 64
    material = SatisfactionMaterial(schnorr_sigs={KEY: sig})
    assert TemplateItem.sign(PLAN_KEY).to_witness_stack(material) == [sig]


def test_sign_witness_missing_signature():
    with pytest.raises(KeyError):
        TemplateItem.sign(PLAN_KEY).to_witness_stack(SatisfactionMaterial())


def test_pk_witness_is_public_key():
    assert TemplateItem.pk(KEY).to_witness_stack(SatisfactionMaterial()) == [KEY.public_key]


@pytest.mark.parametrize(
    "kind,attr",
    [
        (TemplateKind.SHA256, "sha256_preimages"),
        (TemplateKind.HASH256, "hash256_preimages"),
        (TemplateKind.RIPEMD160, "ripemd160_preimages"),
        (TemplateKind.HASH160, "hash160_preimages"),
    ],
)
def test_hash_witness_uses_matching_preimage(kind, attr):
    preimage = b"preimage"
    material = SatisfactionMaterial()
    getattr(material, attr)[IMAGE] = preimage
    assert TemplateItem.hash_image(kind, IMAGE).to_witness_stack(material) == [preimage]


def test_hash_witness_missing_preimage():
    with pytest.raises(KeyError):
        TemplateItem.hash_image(TemplateKind.SHA256, IMAGE).to_witness_stack(SatisfactionMaterial())


def test_item_construction_is_validated():
    with pytest.raises(ValueError):
        TemplateItem(TemplateKind.SIGN)
    with pytest.raises(ValueError):
        TemplateItem(TemplateKind.PK)
    with pytest.raises(ValueError):
        TemplateItem(TemplateKind.HASH160)
    with pytest.raises(ValueError):
        TemplateItem.hash_image(TemplateKind.ONE, IMAGE)


def test_default_required_signatures_are_legacy_and_empty():
    sigs = RequiredSignatures()
    assert sigs.kind is SignatureKind.LEGACY
    assert sigs.keys == []


def test_tap_key_and_tap_script():
    root = b"\x07" * 32
    tap_key = RequiredSignatures.tap_key(PLAN_KEY, root)
    assert tap_key.plan_key == PLAN_KEY
    assert tap_key.merkle_root == root
    tap_script = RequiredSignatures.tap_script(root)
    assert tap_script.kind is SignatureKind.TAP_SCRIPT
    assert tap_script.leaf_hash == root
    with pytest.raises(ValueError):
        tap_script.plan_key


def test_requirements_default_needs_no_preimages():
    req = Requirements()
    assert req.requires_hash_preimages() is False
    assert req.signatures.kind is SignatureKind.LEGACY


@pytest.mark.parametrize("attr", ["sha256_images", "hash160_images", "hash256_images", "ripemd160_images"])
def test_requirements_with_image_needs_preimages(attr):
    req = Requirements()
    getattr(req, attr).add(IMAGE)
    assert req.requires_hash_preimages() is True