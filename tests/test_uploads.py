"""Upload storage and the /api/upload endpoints."""

import pytest

from asphaltworks.service.errors import NotFoundError, ValidationError
from asphaltworks.service.runtime import get_runtime
from asphaltworks.service.uploads import UploadService

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


@pytest.fixture
def uploads(tmp_path):
    return UploadService(tmp_path, max_bytes=1024)


class TestUploadService:
    def test_save_uses_random_name(self, uploads):
        stored = uploads.save(PNG, content_type="image/png", original_name="../../evil.php")
        assert stored.filename.endswith(".png")
        assert "evil" not in stored.filename
        assert stored.url == f"/media/uploads/{stored.filename}"
        assert (uploads.directory / stored.filename).read_bytes() == PNG

    def test_rejects_type(self, uploads):
        with pytest.raises(ValidationError) as excinfo:
            uploads.save(b"<?php", content_type="application/x-php", original_name="x.php")
        assert "image/png" in excinfo.value.detail["allowed"]

    def test_rejects_oversized_and_empty(self, uploads):
        with pytest.raises(ValidationError):
            uploads.save(b"x" * 1025, content_type="image/png", original_name="big.png")
        with pytest.raises(ValidationError):
            uploads.save(b"", content_type="image/png", original_name="empty.png")

    def test_delete(self, uploads):
        stored = uploads.save(PNG, content_type="image/png", original_name="a.png")
        uploads.delete(stored.filename)
        assert not (uploads.directory / stored.filename).exists()
        with pytest.raises(NotFoundError):
            uploads.delete(stored.filename)

    @pytest.mark.parametrize("name", ["../secret.txt", "nested/a.png", "/etc/passwd"])
    def test_delete_refuses_paths(self, uploads, name):
        with pytest.raises(ValidationError):
            uploads.delete(name)


class TestUploadEndpoints:
    def test_staff_upload_and_delete(self, client, make_user, login):
        make_user(role="moderator")
        headers = login()
        response = client.post(
            "/api/upload", headers=headers, files={"file": ("site.png", PNG, "image/png")}
        )
        assert response.status_code == 201, response.text
        data = response.json()["data"]
        assert data["contentType"] == "image/png"
        assert data["size"] == len(PNG)
        assert response.headers["RateLimit-Limit"] == "50"

        stored = get_runtime().uploads.directory / data["filename"]
        assert stored.exists()

        deleted = client.delete(f"/api/upload/{data['filename']}", headers=headers)
        assert deleted.status_code == 200
        assert not stored.exists()

    def test_plain_users_cannot_upload(self, client, make_user, login):
        make_user()
        response = client.post(
            "/api/upload", headers=login(), files={"file": ("a.png", PNG, "image/png")}
        )
        assert response.status_code == 403

    def test_disallowed_type_is_a_validation_error(self, client, make_user, login):
        make_user(role="admin")
        response = client.post(
            "/api/upload",
            headers=login(),
            files={"file": ("run.sh", b"#!/bin/sh", "text/x-shellscript")},
        )
        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"
