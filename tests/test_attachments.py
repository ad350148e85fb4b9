"""Tests for observation photo transfer."""

from unittest.mock import MagicMock, patch

import pytest
import requests

import attachments
from attachments import (
    AttachmentError,
    download,
    encode_for_upload,
    import_image,
    resolve_download_url,
    storage_path,
    upload_observation_image,
)


@pytest.fixture
def photo(tmp_path):
    path = tmp_path / "photo.jpg"
    path.write_bytes(b"\xff\xd8\xff\xe0fake-jpeg")
    return path


def test_storage_path():
    assert storage_path("u1", "obs-9") == "u1/obs-9.jpg"


class TestEncode:
    def test_bytes_survive_base64_step(self, photo):
        assert encode_for_upload(photo) == photo.read_bytes()

    def test_file_uri_is_accepted(self, photo):
        assert encode_for_upload(f"file://{photo}") == photo.read_bytes()

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(AttachmentError):
            encode_for_upload(tmp_path / "gone.jpg")


class TestUpload:
    def test_upload_then_sign_for_a_year(self, cloud, photo):
        url = upload_observation_image(cloud, "u1", "obs-1", photo)

        assert cloud.objects["observations"]["u1/obs-1.jpg"] == photo.read_bytes()
        assert cloud.upload_options == [{"path": "u1/obs-1.jpg", "content_type": "image/jpeg", "upsert": True}]
        assert url.endswith("u1/obs-1.jpg?token=t31536000")

    def test_reupload_overwrites(self, cloud, photo):
        upload_observation_image(cloud, "u1", "obs-1", photo)
        photo.write_bytes(b"second version")

        upload_observation_image(cloud, "u1", "obs-1", photo)

        assert cloud.objects["observations"]["u1/obs-1.jpg"] == b"second version"

    def test_upload_failure_raises(self, cloud, photo):
        cloud.fail_uploads = True

        with pytest.raises(AttachmentError):
            upload_observation_image(cloud, "u1", "obs-1", photo)


class TestResolveDownloadUrl:
    def test_signed_url_is_used_as_is(self, cloud):
        stored = "https://fake.supabase.co/storage/v1/object/sign/observations/u1/a.jpg?token=old"

        assert resolve_download_url(cloud, stored, "u1", "a") == stored
        assert cloud.calls == []

    def test_plain_url_is_resigned_for_an_hour(self, cloud):
        url = resolve_download_url(cloud, "https://cdn.example/a.jpg", "u1", "obs-7")

        assert url.endswith("u1/obs-7.jpg?token=t3600")
        assert ("storage:observations", "sign", ("u1/obs-7.jpg", 3600)) in cloud.calls

    def test_signing_failure_falls_back_to_stored_url(self):
        client = MagicMock()
        client.storage.from_.return_value.create_signed_url.return_value = MagicMock(error="denied", data=None)

        assert resolve_download_url(client, "https://cdn.example/a.jpg", "u1", "a") == "https://cdn.example/a.jpg"


class TestDownload:
    def test_writes_file(self, tmp_path):
        response = MagicMock(ok=True, status_code=200, content=b"jpeg-bytes")
        with patch.object(attachments.requests, "get", return_value=response):
            path = download("https://x/y.jpg", tmp_path / "media", "obs.jpg")

        assert path == str(tmp_path / "media" / "obs.jpg")
        assert (tmp_path / "media" / "obs.jpg").read_bytes() == b"jpeg-bytes"

    def test_http_error_raises(self, tmp_path):
        response = MagicMock(ok=False, status_code=403, content=b"")
        with patch.object(attachments.requests, "get", return_value=response):
            with pytest.raises(AttachmentError, match="403"):
                download("https://x/y.jpg", tmp_path, "obs.jpg")
        assert not (tmp_path / "obs.jpg").exists()

    def test_transport_error_raises(self, tmp_path):
        with patch.object(attachments.requests, "get", side_effect=requests.exceptions.Timeout("slow")):
            with pytest.raises(AttachmentError):
                download("https://x/y.jpg", tmp_path, "obs.jpg")


class TestImportImage:
    def test_copies_into_media_dir(self, photo, media_dir):
        path = import_image(photo, media_dir)

        assert path.startswith(str(media_dir))
        assert path.endswith(".jpg")
        with open(path, "rb") as f:
            assert f.read() == photo.read_bytes()

    def test_explicit_name(self, photo, media_dir):
        assert import_image(photo, media_dir, "chosen.jpg") == str(media_dir / "chosen.jpg")
