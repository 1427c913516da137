from io import BytesIO

import pytest
from werkzeug.datastructures import FileStorage

import storage_service
from errors import UpstreamError, ValidationError


def test_document_path():
    assert storage_service.document_path("u1", "Scan.JPEG", now=1.5) == "u1/id-1500.jpeg"
    assert storage_service.document_path("u1", "scan", now=2) == "u1/id-2000.png"


def test_upload_rejects_missing_or_non_image(app_module, backend):
    with pytest.raises(ValidationError):
        storage_service.upload_id_document("u1", None)

    fs = FileStorage(stream=BytesIO(b"%PDF"), filename="scan.pdf")
    with pytest.raises(ValidationError):
        storage_service.upload_id_document("u1", fs)
    assert backend.uploads == {}


def test_upload_and_sign(app_module, backend):
    fs = FileStorage(stream=BytesIO(b"img"), filename="id.webp", content_type="image/webp")
    path = storage_service.upload_id_document("u1", fs)

    assert path.startswith("u1/id-") and path.endswith(".webp")
    assert backend.uploads[path] == b"img"
    assert storage_service.create_signed_url(path, 60) == f"https://files.test/kyc/{path}?ttl=60"


def test_upload_failure_is_upstream_error(app_module, backend):
    backend.fail_uploads = True
    fs = FileStorage(stream=BytesIO(b"img"), filename="id.png")
    with pytest.raises(UpstreamError) as exc:
        storage_service.upload_id_document("u1", fs)
    assert exc.value.message == "Bucket not found"
