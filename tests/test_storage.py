"""Tests for object keys, object stores, the storage gateway and the orphan log."""

import time
from urllib.parse import parse_qs, urlparse

import boto3
import jwt
import pytest
from botocore.stub import ANY, Stubber

from conftest import MP4_BYTES, SIGNING_SECRET
from uploader.exceptions import StorageFailureError
from uploader.storage import LocalObjectStore, S3ObjectStore, build_object_store
from uploader.storage.gateway import StorageGateway
from uploader.storage.keys import ROLE_CAPTION, ROLE_THUMBNAIL, ROLE_VIDEO, asset_folder, object_key
from uploader.storage.orphans import OrphanedObjectLog
from uploader.types import StagedFile


@pytest.fixture
def s3_client():
    return boto3.client(
        "s3",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


@pytest.fixture
def staged(sample_video):
    return StagedFile(path=sample_video, filename="sample.mp4", content_type="video/mp4", size=len(MP4_BYTES))


# Keys

def test_object_key_layout():
    """Test keys follow collection/owner/asset/role/filename."""
    assert asset_folder("videos", "u1", "v1") == "videos/u1/v1/"
    assert object_key("videos", "u1", "v1", ROLE_VIDEO, "clip.mp4") == "videos/u1/v1/video/clip.mp4"
    assert object_key("videos", "u1", "v1", ROLE_THUMBNAIL, "t.jpg") == "videos/u1/v1/thumbnail/t.jpg"
    assert object_key("videos", "u1", "v1", ROLE_CAPTION, "en.vtt", language="en") == "videos/u1/v1/caption/en/en.vtt"


def test_object_key_sanitizes_filename():
    """Test declared filenames are reduced to a safe basename."""
    assert object_key("videos", "u1", "v1", ROLE_VIDEO, "../../etc/my clip.mp4") == "videos/u1/v1/video/my_clip.mp4"


def test_object_key_rejects_bad_input():
    """Test unsafe segments, unknown roles and captions without language are rejected."""
    with pytest.raises(ValueError):
        asset_folder("videos", "../u1", "v1")
    with pytest.raises(ValueError):
        asset_folder("videos", "u1", "..")
    with pytest.raises(ValueError):
        object_key("videos", "u1", "v1", "poster", "p.jpg")
    with pytest.raises(ValueError):
        object_key("videos", "u1", "v1", ROLE_CAPTION, "en.vtt")


# Local store

def test_local_upload_and_delete(local_store, sample_video):
    """Test uploading, replacing and deleting an object."""
    stored = local_store.upload_file(sample_video, "videos/u1/v1/video/clip.mp4", "video/mp4")

    assert stored.key == "videos/u1/v1/video/clip.mp4"
    assert stored.size == len(MP4_BYTES)
    assert stored.url == "http://testserver/objects/videos/u1/v1/video/clip.mp4"
    assert local_store.resolve_path(stored.key).read_bytes() == MP4_BYTES

    assert local_store.delete_object(stored.key) is True
    assert local_store.delete_object(stored.key) is False


def test_local_delete_prefix(local_store, sample_video):
    """Test deleting an asset folder removes every object in it."""
    local_store.upload_file(sample_video, "videos/u1/v1/video/clip.mp4", "video/mp4")
    local_store.upload_file(sample_video, "videos/u1/v1/thumbnail/t.jpg", "image/jpeg")
    local_store.upload_file(sample_video, "videos/u1/v2/video/other.mp4", "video/mp4")

    assert local_store.delete_prefix("videos/u1/v1/") == 2
    assert local_store.delete_prefix("videos/u1/v1/") == 0
    assert local_store.resolve_path("videos/u1/v2/video/other.mp4").exists()


@pytest.mark.parametrize("key", ["", "/etc/passwd", "../outside", "videos/../../outside"])
def test_local_rejects_escaping_keys(local_store, key):
    """Test keys cannot address files outside the store root."""
    with pytest.raises(ValueError):
        local_store.resolve_path(key)


def test_local_signed_url_token(local_store, sample_video):
    """Test signed URLs carry a token bound to the key."""
    key = "videos/u1/v1/video/clip.mp4"
    local_store.upload_file(sample_video, key, "video/mp4")

    url = local_store.signed_url(key, 60)
    parsed = urlparse(url)
    token = parse_qs(parsed.query)["token"][0]

    assert parsed.path == "/objects/videos/u1/v1/video/clip.mp4"
    assert local_store.verify_token(key, token) is True
    assert local_store.verify_token("videos/u1/v1/video/other.mp4", token) is False
    assert local_store.verify_token(key, "not-a-token") is False


def test_local_signed_url_expiry(local_store):
    """Test expired or foreign-secret tokens are refused."""
    key = "videos/u1/v1/video/clip.mp4"
    expired = parse_qs(urlparse(local_store.signed_url(key, -10)).query)["token"][0]

    other = LocalObjectStore(local_store.root, "http://testserver", "another-secret-that-is-also-long-enough")
    foreign = parse_qs(urlparse(other.signed_url(key, 60)).query)["token"][0]

    assert local_store.verify_token(key, expired) is False
    assert local_store.verify_token(key, foreign) is False


def test_local_check_creates_root(tmp_path):
    """Test the readiness check creates a writable root."""
    store = LocalObjectStore(tmp_path / "new-root", "http://testserver", SIGNING_SECRET)

    store.check()

    assert (tmp_path / "new-root").is_dir()


# S3 store

def test_s3_upload(s3_client, sample_video):
    """Test uploads use put_object with the declared content type."""
    store = S3ObjectStore("media", client=s3_client, region="us-east-1")

    with Stubber(s3_client) as stub:
        stub.add_response(
            "put_object",
            {"ETag": '"abc"'},
            {"Bucket": "media", "Key": "videos/u1/v1/video/clip.mp4", "Body": ANY, "ContentType": "video/mp4"},
        )
        stored = store.upload_file(sample_video, "videos/u1/v1/video/clip.mp4", "video/mp4")
        stub.assert_no_pending_responses()

    assert stored.size == len(MP4_BYTES)
    assert stored.url == "https://media.s3.us-east-1.amazonaws.com/videos/u1/v1/video/clip.mp4"


def test_s3_upload_error_propagates(s3_client, sample_video):
    """Test client errors surface from the store."""
    store = S3ObjectStore("media", client=s3_client)

    with Stubber(s3_client) as stub:
        stub.add_client_error("put_object", service_error_code="AccessDenied", http_status_code=403)
        with pytest.raises(Exception):
            store.upload_file(sample_video, "videos/u1/v1/video/clip.mp4", None)


def test_s3_delete_object(s3_client):
    """Test single deletions."""
    store = S3ObjectStore("media", client=s3_client)

    with Stubber(s3_client) as stub:
        stub.add_response("delete_object", {}, {"Bucket": "media", "Key": "videos/u1/v1/video/clip.mp4"})
        assert store.delete_object("videos/u1/v1/video/clip.mp4") is True


def test_s3_delete_prefix(s3_client):
    """Test prefix deletion lists then batch-deletes, not counting errors."""
    store = S3ObjectStore("media", client=s3_client)
    keys = ["videos/u1/v1/video/clip.mp4", "videos/u1/v1/thumbnail/t.jpg"]

    with Stubber(s3_client) as stub:
        stub.add_response(
            "list_objects_v2",
            {"Contents": [{"Key": k} for k in keys], "IsTruncated": False},
            {"Bucket": "media", "Prefix": "videos/u1/v1/"},
        )
        stub.add_response(
            "delete_objects",
            {"Errors": [{"Key": keys[1], "Code": "AccessDenied", "Message": "Access Denied"}]},
            {"Bucket": "media", "Delete": {"Objects": [{"Key": k} for k in keys], "Quiet": True}},
        )
        assert store.delete_prefix("videos/u1/v1/") == 1
        stub.assert_no_pending_responses()


def test_s3_check_and_signed_url(s3_client):
    """Test the readiness check and presigned URLs."""
    store = S3ObjectStore("media", client=s3_client)

    with Stubber(s3_client) as stub:
        stub.add_response("head_bucket", {}, {"Bucket": "media"})
        store.check()

    url = store.signed_url("videos/u1/v1/video/clip.mp4", 300)
    assert "media" in url
    assert "videos/u1/v1/video/clip.mp4" in url


def test_s3_public_url_with_endpoint(s3_client):
    """Test path-style URLs for custom endpoints."""
    store = S3ObjectStore("media", client=s3_client, endpoint_url="http://minio:9000/")

    assert store.public_url("a/b.mp4") == "http://minio:9000/media/a/b.mp4"


def test_build_object_store(tmp_path):
    """Test backend selection."""
    store = build_object_store("local", str(tmp_path), "http://testserver", SIGNING_SECRET)
    assert isinstance(store, LocalObjectStore)

    with pytest.raises(ValueError):
        build_object_store("ftp", str(tmp_path), "http://testserver", SIGNING_SECRET)

    with pytest.raises(ValueError):
        build_object_store("s3", str(tmp_path), "http://testserver", SIGNING_SECRET, s3_bucket=None)


# Gateway

@pytest.mark.asyncio
async def test_gateway_upload(gateway, staged, local_store):
    """Test the gateway uploads under the asset's key."""
    stored = await gateway.upload_asset_file(staged, "u1", "v1", ROLE_VIDEO)

    assert stored.key == "videos/u1/v1/video/sample.mp4"
    assert local_store.resolve_path(stored.key).exists()


@pytest.mark.asyncio
async def test_gateway_maps_errors(gateway, staged, local_store, monkeypatch):
    """Test backend exceptions surface as StorageFailureError."""
    def broken(local_path, key, content_type):
        raise OSError("disk full")

    monkeypatch.setattr(local_store, "upload_file", broken)

    with pytest.raises(StorageFailureError):
        await gateway.upload_asset_file(staged, "u1", "v1", ROLE_VIDEO)


@pytest.mark.asyncio
async def test_gateway_timeout_removes_late_upload(local_store, staged, monkeypatch):
    """Test a timed-out upload that lands afterwards is deleted once it finishes."""
    gateway = StorageGateway(local_store, collection="videos", timeout=0.05, retry_delay=0)
    original_upload = local_store.upload_file

    def slow(local_path, key, content_type):
        time.sleep(0.3)
        return original_upload(local_path, key, content_type)

    monkeypatch.setattr(local_store, "upload_file", slow)

    with pytest.raises(StorageFailureError, match="timed out"):
        await gateway.upload_asset_file(staged, "u1", "v1", ROLE_VIDEO)

    await gateway.drain()

    assert not local_store.resolve_path("videos/u1/v1/video/sample.mp4").exists()


@pytest.mark.asyncio
async def test_gateway_records_late_upload_it_cannot_delete(local_store, staged, orphan_log, monkeypatch):
    """Test a late upload whose delete keeps failing is written to the orphan log."""
    gateway = StorageGateway(local_store, collection="videos", timeout=0.05, retry_delay=0, orphan_log=orphan_log)
    original_upload = local_store.upload_file

    def slow(local_path, key, content_type):
        time.sleep(0.3)
        return original_upload(local_path, key, content_type)

    def denied(key):
        raise OSError("access denied")

    monkeypatch.setattr(local_store, "upload_file", slow)
    monkeypatch.setattr(local_store, "delete_object", denied)

    with pytest.raises(StorageFailureError):
        await gateway.upload_asset_file(staged, "u1", "v1", ROLE_VIDEO)

    await gateway.drain()

    assert [e["key"] for e in orphan_log.load()] == ["videos/u1/v1/video/sample.mp4"]


@pytest.mark.asyncio
async def test_gateway_delete_retries(gateway, local_store, monkeypatch):
    """Test deletions are retried and only persistent failures are returned."""
    attempts = {"flaky": 0, "dead": 0}

    def delete(key):
        attempts[key] += 1
        if key == "dead" or attempts[key] < 3:
            raise OSError("temporarily unavailable")
        return True

    monkeypatch.setattr(local_store, "delete_object", delete)

    failed = await gateway.delete_objects(["flaky", "dead"])

    assert failed == ["dead"]
    assert attempts == {"flaky": 3, "dead": 3}


@pytest.mark.asyncio
async def test_gateway_delete_asset_folder(gateway, staged, local_store):
    """Test every object of an asset is removed."""
    await gateway.upload_asset_file(staged, "u1", "v1", ROLE_VIDEO)
    await gateway.upload_asset_file(staged, "u1", "v1", ROLE_CAPTION, language="en")

    assert await gateway.delete_asset_folder("u1", "v1") == 2


@pytest.mark.asyncio
async def test_gateway_signed_url_default_ttl(local_store):
    """Test the configured TTL applies when none is given."""
    gateway = StorageGateway(local_store, collection="videos", signed_url_ttl_minutes=5)
    before = int(time.time())

    url = await gateway.signed_url("videos/u1/v1/video/clip.mp4")

    token = parse_qs(urlparse(url).query)["token"][0]
    claims = jwt.decode(token, SIGNING_SECRET, algorithms=["HS256"])
    assert before + 300 <= claims["exp"] <= int(time.time()) + 300


# Orphan log

def test_orphan_log_record_and_replace(orphan_log):
    """Test entries are appended once per key and cleared by replace."""
    orphan_log.record(["a", "b"], "metadata commit failed")
    orphan_log.record(["b", "c"], "storage failed")

    entries = orphan_log.load()
    assert [e["key"] for e in entries] == ["a", "b", "c"]
    assert entries[1]["reason"] == "metadata commit failed"
    assert "recorded_at" in entries[0]

    orphan_log.replace(entries[2:])
    assert [e["key"] for e in orphan_log.load()] == ["c"]

    orphan_log.replace([])
    assert not orphan_log.path.exists()
    assert orphan_log.load() == []


def test_orphan_log_tolerates_corrupt_file(tmp_path):
    """Test an unreadable log loads as empty."""
    path = tmp_path / "orphans.json"
    path.write_text("{not json")

    assert OrphanedObjectLog(path).load() == []
