# tests/test_router.py
"""
Router: one backend per store, dispatch on the persisted tier tag, locator
fields on records, round trips through every tier.
"""

import base64

import pytest

from tierstore.errors import NotFound, UnsupportedTier
from tierstore.models import (
    F_COMPRESSED_DATA,
    F_FILE_PATH,
    F_FORM_DATA,
    F_GRIDFS_ID,
    F_CHUNKED_ID,
    StoredObjectLocator,
    Tier,
)
from tierstore.router import LargeObjectRouter

PAYLOADS = [
    {},
    {"a": {"b": {"c": {"d": {"e": [1, 2, {"f": None}]}}}}},
    {"attachment": base64.b64encode(bytes(range(256)) * 8).decode("ascii"), "name": "photo.png"},
    {"rows": [{"i": i, "v": "x" * 50} for i in range(80)]},
]

STORABLE = [Tier.INLINE, Tier.COMPRESSED_INLINE, Tier.FILESYSTEM_FILE, Tier.CHUNKED_BUCKET, Tier.CHUNKED_COLLECTION]


def _record(result):
    to_set, _ = LargeObjectRouter.record_update(result)
    return to_set


@pytest.mark.asyncio
@pytest.mark.parametrize("tier", STORABLE)
async def test_roundtrip_every_tier(router, tier):
    for payload in PAYLOADS:
        result = await router.store_as(tier, payload, name="rt")
        assert result.locator.tier == tier
        assert await router.retrieve(_record(result)) == payload


@pytest.mark.asyncio
async def test_store_classifies_by_size(router, make_payload):
    assert (await router.store(make_payload(100), name="a")).locator.tier == Tier.INLINE
    assert (await router.store(make_payload(1000), name="b")).locator.tier == Tier.COMPRESSED_INLINE
    assert (await router.store(make_payload(5000), name="c")).locator.tier == Tier.CHUNKED_BUCKET


@pytest.mark.asyncio
async def test_large_bucket_object_read_via_direct_reader(router, fake_bucket, make_payload):
    payload = make_payload(5000)
    result = await router.store(payload, name="big")
    assert result.locator.tier == Tier.CHUNKED_BUCKET
    assert await router.retrieve(_record(result)) == payload
    assert fake_bucket.downloads == 0


@pytest.mark.asyncio
async def test_record_update_sets_and_unsets(router, make_payload):
    result = await router.store_as(Tier.FILESYSTEM_FILE, make_payload(100), name="f")
    to_set, to_unset = LargeObjectRouter.record_update(result)
    assert to_set["storageMethod"] == "file"
    assert to_set[F_FILE_PATH] == result.locator.reference
    assert to_set["isLargeData"] is True
    assert to_set["isCompressed"] is False
    assert to_set["dataSize"] == 100
    assert to_set["storageStatus"] == "healthy"
    assert "fileName" in to_set and "fileSize" in to_set
    assert set(to_unset) == {F_FORM_DATA, F_COMPRESSED_DATA, F_GRIDFS_ID, F_CHUNKED_ID}

    inline = await router.store_as(Tier.INLINE, {"x": 1}, name="i")
    to_set, to_unset = LargeObjectRouter.record_update(inline)
    assert to_set[F_FORM_DATA] == {"x": 1}
    assert to_set["isLargeData"] is False
    assert F_FILE_PATH in to_unset and F_GRIDFS_ID in to_unset


def test_locator_inference_for_untagged_records():
    assert LargeObjectRouter.locator_for({F_FILE_PATH: "/x.json"}).tier == Tier.FILESYSTEM_FILE
    assert LargeObjectRouter.locator_for({F_GRIDFS_ID: "abc"}).tier == Tier.CHUNKED_BUCKET
    assert LargeObjectRouter.locator_for({F_CHUNKED_ID: "c_1"}).tier == Tier.CHUNKED_COLLECTION
    assert LargeObjectRouter.locator_for({F_COMPRESSED_DATA: b"\x1f\x8b"}).tier == Tier.COMPRESSED_INLINE
    assert LargeObjectRouter.locator_for({F_FORM_DATA: {"a": 1}}).tier == Tier.INLINE
    loc = LargeObjectRouter.locator_for({"storageMethod": "file", F_FILE_PATH: "/y.gz", "isCompressed": True, "dataSize": 9})
    assert loc == StoredObjectLocator(tier=Tier.FILESYSTEM_FILE, reference="/y.gz", compressed=True, size_bytes=9)


@pytest.mark.asyncio
async def test_unknown_and_external_tiers(router):
    with pytest.raises(UnsupportedTier):
        LargeObjectRouter.locator_for({"storageMethod": "s3"})
    with pytest.raises(UnsupportedTier):
        await router.retrieve({"storageMethod": "external"})
    with pytest.raises(UnsupportedTier):
        await router.store_as(Tier.EXTERNAL, {"a": 1}, name="e")


@pytest.mark.asyncio
async def test_delete_never_raises(router, make_payload):
    result = await router.store_as(Tier.FILESYSTEM_FILE, make_payload(100), name="d")
    record = _record(result)
    await router.delete(record)
    await router.delete(record)
    await router.delete({"storageMethod": "bogus"})
    await router.delete(StoredObjectLocator(tier=Tier.EXTERNAL, reference="x"))
    with pytest.raises(NotFound):
        await router.retrieve(record)


def test_referenced_locators_deduplicates():
    record = {
        "storageMethod": "file",
        F_FILE_PATH: "/a.json",
        F_GRIDFS_ID: "65f0c0ffee0000000000abcd",
        F_CHUNKED_ID: "c_1",
    }
    locs = LargeObjectRouter.referenced_locators(record)
    assert [(l.tier, l.reference) for l in locs] == [
        (Tier.FILESYSTEM_FILE, "/a.json"),
        (Tier.CHUNKED_BUCKET, "65f0c0ffee0000000000abcd"),
        (Tier.CHUNKED_COLLECTION, "c_1"),
    ]
    legacy = LargeObjectRouter.legacy_locators(record, keep=Tier.FILESYSTEM_FILE)
    assert [l.tier for l in legacy] == [Tier.CHUNKED_BUCKET, Tier.CHUNKED_COLLECTION]


@pytest.mark.asyncio
async def test_null_payload_is_rejected(router):
    with pytest.raises(ValueError):
        await router.store(None, name="n")
    with pytest.raises(ValueError):
        await router.store_as(Tier.FILESYSTEM_FILE, None, name="n")
