"""
Blob store tests: local filesystem, and S3 against a recording fake client.
"""

import asyncio

import pytest
from botocore.exceptions import ClientError

from sbupload.blob.base import validate_key, validate_prefix
from sbupload.blob.local import LocalBlobStore
from sbupload.blob import s3
from sbupload.blob.s3 import S3BlobStore, r2_endpoint, r2_public_base_url
from sbupload.core.errors import BlobStoreError


class TestKeys:

    @pytest.mark.parametrize("key", ["demo/v1/storybook.zip", "a/b", "p/1.0.0+build.5/x.json"])
    def test_valid(self, key):
        assert validate_key(key) == key

    @pytest.mark.parametrize("key", ["", "/abs/key", "a//b", "a/../b", "./a", "a/b c", "a\\b"])
    def test_invalid(self, key):
        with pytest.raises(BlobStoreError):
            validate_key(key)

    def test_prefix_needs_trailing_slash(self):
        assert validate_prefix("demo/v1/") == "demo/v1/"
        with pytest.raises(BlobStoreError):
            validate_prefix("demo/v1")


class TestLocalBlobStore:

    def test_upload_and_exists(self, blob_store):
        async def scenario():
            result = await blob_store.upload("demo/v1/storybook.zip", b"zip", "application/zip")
            return result, await blob_store.exists("demo/v1/storybook.zip"), await blob_store.exists("demo/v2/x")

        result, present, absent = asyncio.run(scenario())
        assert result.url == "https://cdn.example.com/demo/v1/storybook.zip"
        assert result.path == "demo/v1/storybook.zip"
        assert result.version_id is None
        assert present and not absent

    def test_overwrite_leaves_no_temp_files(self, blob_store):
        async def scenario():
            await blob_store.upload("demo/v1/storybook.zip", b"one", "application/zip")
            await blob_store.upload("demo/v1/storybook.zip", b"two", "application/zip")

        asyncio.run(scenario())
        directory = blob_store.root / "demo" / "v1"
        assert (directory / "storybook.zip").read_bytes() == b"two"
        assert [p.name for p in directory.iterdir()] == ["storybook.zip"]

    def test_file_url_without_public_base(self, tmp_path):
        store = LocalBlobStore(tmp_path / "blobs")
        result = asyncio.run(store.upload("demo/v1/storybook.zip", b"zip", "application/zip"))
        assert result.url.startswith("file://")

    def test_rejects_traversal(self, blob_store):
        with pytest.raises(BlobStoreError):
            asyncio.run(blob_store.upload("../escape.zip", b"x", "application/zip"))

    def test_presign_not_supported(self, blob_store):
        with pytest.raises(BlobStoreError):
            asyncio.run(blob_store.get_presigned_upload_url("demo/v1/storybook.zip", "application/zip"))

    def test_delete_by_prefix(self, blob_store):
        async def scenario():
            await blob_store.upload("demo/v1/storybook.zip", b"a", "application/zip")
            await blob_store.upload("demo/v1/coverage-report.json", b"{}", "application/json")
            await blob_store.upload("demo/v10/storybook.zip", b"b", "application/zip")
            return await blob_store.delete_by_prefix("demo/v1/"), await blob_store.delete_by_prefix("demo/v1/")

        first, second = asyncio.run(scenario())
        assert (first, second) == (2, 0)
        assert (blob_store.root / "demo" / "v10" / "storybook.zip").exists()




class FakePaginator:
    def __init__(self, pages):
        self.pages = pages
        self.calls = []

    def paginate(self, **kwargs):
        self.calls.append(kwargs)
        return iter(self.pages)


class FakeS3Client:
    """Records calls and answers from canned data in place of a boto3 S3 client."""

    def __init__(self, objects=(), error_code=None):
        self.objects = list(objects)
        self.error_code = error_code
        self.calls = []

    def _maybe_fail(self, operation):
        if self.error_code:
            raise ClientError({"Error": {"Code": self.error_code, "Message": "boom"}}, operation)

    def put_object(self, **kwargs):
        self.calls.append(("put_object", kwargs))
        self._maybe_fail("PutObject")
        return {"VersionId": "v-123", "ETag": '"abc"'}

    def head_object(self, **kwargs):
        self.calls.append(("head_object", kwargs))
        self._maybe_fail("HeadObject")
        if kwargs["Key"] not in self.objects:
            raise ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject")
        return {"ContentLength": 3}

    def get_paginator(self, name):
        assert name == "list_objects_v2"
        # Two pages, the way S3 splits long listings
        half = len(self.objects) // 2
        pages = [{"Contents": [{"Key": k} for k in chunk]} for chunk in (self.objects[:half], self.objects[half:])]
        self.paginator = FakePaginator(pages)
        return self.paginator

    def delete_objects(self, **kwargs):
        self.calls.append(("delete_objects", kwargs))
        return {}


class TestS3BlobStore:

    def test_upload(self):
        client = FakeS3Client()
        store = S3BlobStore("books", public_base_url="https://cdn.example.com/", client=client)

        result = asyncio.run(store.upload("demo/v1/storybook.zip", b"zip", "application/zip"))
        assert result.url == "https://cdn.example.com/demo/v1/storybook.zip"
        assert result.to_dict()["versionId"] == "v-123"
        assert client.calls == [("put_object", {
            "Bucket": "books",
            "Key": "demo/v1/storybook.zip",
            "Body": b"zip",
            "ContentType": "application/zip",
        })]

    def test_upload_failure_is_wrapped(self):
        store = S3BlobStore("books", client=FakeS3Client(error_code="AccessDenied"))
        with pytest.raises(BlobStoreError, match="AccessDenied"):
            asyncio.run(store.upload("demo/v1/storybook.zip", b"zip", "application/zip"))

    def test_invalid_key_never_reaches_client(self):
        client = FakeS3Client()
        with pytest.raises(BlobStoreError):
            asyncio.run(S3BlobStore("books", client=client).upload("../x", b"", "application/zip"))
        assert client.calls == []

    def test_exists(self):
        store = S3BlobStore("books", client=FakeS3Client(objects=["demo/v1/a.zip"]))

        async def scenario():
            return await store.exists("demo/v1/a.zip"), await store.exists("demo/v1/b.zip")

        assert asyncio.run(scenario()) == (True, False)

    def test_exists_other_errors_raise(self):
        store = S3BlobStore("books", client=FakeS3Client(error_code="AccessDenied"))
        with pytest.raises(BlobStoreError):
            asyncio.run(store.exists("demo/v1/a.zip"))

    def test_delete_by_prefix(self):
        keys = ["demo/v1/storybook.zip", "demo/v1/coverage-report.json", "demo/v1/index.html"]
        client = FakeS3Client(objects=keys)
        store = S3BlobStore("books", client=client)

        assert asyncio.run(store.delete_by_prefix("demo/v1/")) == 3
        assert client.paginator.calls == [{"Bucket": "books", "Prefix": "demo/v1/"}]
        assert client.calls == [("delete_objects", {
            "Bucket": "books",
            "Delete": {"Objects": [{"Key": k} for k in keys], "Quiet": True},
        })]

    def test_delete_batches(self, monkeypatch):
        monkeypatch.setattr(s3, "DELETE_BATCH_SIZE", 2)
        client = FakeS3Client(objects=[f"demo/v1/{i}.json" for i in range(5)])

        assert asyncio.run(S3BlobStore("books", client=client).delete_by_prefix("demo/v1/")) == 5
        assert [len(kw["Delete"]["Objects"]) for _, kw in client.calls] == [2, 2, 1]

    def test_delete_nothing(self):
        client = FakeS3Client()
        assert asyncio.run(S3BlobStore("books", client=client).delete_by_prefix("demo/v1/")) == 0
        assert client.calls == []

    def test_presigned_url(self):
        # Presigning is local to botocore and needs no network
        store = S3BlobStore(
            "books",
            endpoint_url=r2_endpoint("acct"),
            access_key_id="testing",
            secret_access_key="testing",
        )

        presigned = asyncio.run(store.get_presigned_upload_url("demo/v1/storybook.zip", "application/zip"))
        assert presigned.key == "demo/v1/storybook.zip"
        assert "?" in presigned.url
        assert "r2.cloudflarestorage.com" in presigned.object_url
        assert presigned.object_url.endswith("/demo/v1/storybook.zip")
        assert "?" not in presigned.object_url


class TestUrls:

    def test_r2_helpers(self):
        assert r2_endpoint("acct") == "https://acct.r2.cloudflarestorage.com"
        assert r2_public_base_url("acct", "books").startswith("https://")

    def test_for_r2_uses_public_base(self):
        store = S3BlobStore.for_r2("acct", "books", "id", "secret", public_base_url="https://pub.example.com")
        assert store.url_for("demo/v1/storybook.zip") == "https://pub.example.com/demo/v1/storybook.zip"
        assert store.endpoint_url == r2_endpoint("acct")

    def test_endpoint_url_without_public_base(self):
        store = S3BlobStore("books", endpoint_url="http://localhost:9000/", client=FakeS3Client())
        assert store.url_for("a/b.zip") == "http://localhost:9000/books/a/b.zip"

    def test_plain_aws_url(self):
        store = S3BlobStore("books", client=FakeS3Client())
        assert store.url_for("a/b.zip") == "https://books.s3.amazonaws.com/a/b.zip"
