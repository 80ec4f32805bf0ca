# tests/test_bucket_backend.py
"""
GridFS bucket tier against the in-memory bucket: chunked upload, metadata
lookup before streaming, direct-reader routing for large objects.
"""

import pytest
from bson import ObjectId

from tierstore import codec
from tierstore.backends import BucketBackend
from tierstore.config import FORMS
from tierstore.errors import CorruptedObject, NotFound, StorageUnavailable
from tierstore.models import StoredObjectLocator, Tier


@pytest.fixture
def bucket_backend(fake_db, small_config, fake_bucket, reader):
    return BucketBackend(fake_db, small_config, FORMS, bucket=fake_bucket, reader=reader)


def _chunks(fake_db):
    return fake_db[f"{FORMS.bucket_name}.chunks"]


def _files(fake_db):
    return fake_db[f"{FORMS.bucket_name}.files"]


@pytest.mark.asyncio
async def test_store_writes_chunks_and_metadata(bucket_backend, fake_db, make_payload):
    data = codec.encode_json(make_payload(1000))
    result = await bucket_backend.store(data, name="65f0", metadata={"userId": "u1"})
    assert result.locator.tier == Tier.CHUNKED_BUCKET
    assert result.locator.compressed is False
    files = _files(fake_db).docs
    assert len(files) == 1
    doc = files[0]
    assert str(doc["_id"]) == result.locator.reference
    assert doc["filename"] == "form_65f0.json"
    assert doc["length"] == 1000
    assert doc["chunkSize"] == 256
    assert doc["metadata"]["contentType"] == "application/json"
    assert doc["metadata"]["userId"] == "u1"
    assert doc["metadata"]["originalSize"] == 1000
    assert "createdAt" in doc["metadata"]
    assert len(_chunks(fake_db).docs) == 4


@pytest.mark.asyncio
async def test_small_object_uses_stream_reader(bucket_backend, fake_bucket, make_payload):
    data = codec.encode_json(make_payload(1500))
    result = await bucket_backend.store(data, name="small")
    assert await bucket_backend.retrieve(result.locator) == data
    assert fake_bucket.downloads == 1


@pytest.mark.asyncio
async def test_large_object_uses_direct_reader(bucket_backend, fake_bucket, fake_db, make_payload):
    data = codec.encode_json(make_payload(5000))
    result = await bucket_backend.store(data, name="large")
    assert await bucket_backend.retrieve(result.locator) == data
    assert fake_bucket.downloads == 0
    assert _chunks(fake_db).calls["find_one"] == 20


@pytest.mark.asyncio
async def test_deleted_metadata_is_not_found(bucket_backend, fake_db, fake_bucket, make_payload):
    result = await bucket_backend.store(codec.encode_json(make_payload(600)), name="x")
    await _files(fake_db).delete_many({})
    with pytest.raises(NotFound):
        await bucket_backend.retrieve(result.locator)
    assert fake_bucket.downloads == 0


@pytest.mark.asyncio
async def test_invalid_or_unknown_ids(bucket_backend):
    with pytest.raises(NotFound):
        await bucket_backend.retrieve(StoredObjectLocator(tier=Tier.CHUNKED_BUCKET, reference="not-an-id"))
    with pytest.raises(NotFound):
        await bucket_backend.retrieve(StoredObjectLocator(tier=Tier.CHUNKED_BUCKET, reference=str(ObjectId())))
    with pytest.raises(NotFound):
        await bucket_backend.retrieve(StoredObjectLocator(tier=Tier.CHUNKED_BUCKET))


@pytest.mark.asyncio
async def test_missing_chunk_on_large_object_is_corrupted(bucket_backend, fake_db, make_payload):
    result = await bucket_backend.store(codec.encode_json(make_payload(5000)), name="holey")
    await _chunks(fake_db).delete_many({"files_id": ObjectId(result.locator.reference), "n": 7})
    with pytest.raises(CorruptedObject):
        await bucket_backend.retrieve(result.locator)


@pytest.mark.asyncio
async def test_delete_removes_files_and_chunks_idempotently(bucket_backend, fake_db, make_payload):
    payload = make_payload(900)
    result = await bucket_backend.store(codec.encode_json(payload), name="d")
    assert codec.decode_json(await bucket_backend.retrieve(result.locator)) == payload
    await bucket_backend.delete(result.locator)
    await bucket_backend.delete(result.locator)
    assert _files(fake_db).docs == []
    assert _chunks(fake_db).docs == []
    with pytest.raises(NotFound):
        await bucket_backend.retrieve(result.locator)


@pytest.mark.asyncio
async def test_upload_failure_aborts(bucket_backend, fake_bucket, fake_db):
    fake_bucket.fail_ops.add("write")
    with pytest.raises(StorageUnavailable):
        await bucket_backend.store(b'{"a":1}', name="broken")
    assert fake_bucket.uploads[-1].aborted is True
    assert _files(fake_db).docs == []
