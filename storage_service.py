"""
Private KYC document storage in the Supabase storage bucket.

Uploads go through the service-role client (the server writes on behalf
of the signed-in user); previews are short-lived signed URLs.
"""
from time import time
from typing import Optional

from flask import current_app
from werkzeug.utils import secure_filename

import auth_service
from errors import UpstreamError, ValidationError

ALLOWED_IMAGE = {"png", "jpg", "jpeg", "webp", "gif", "heic"}
SIGNED_URL_TTL_SECONDS = 5 * 60


def _ext_ok(filename, allowed):
    return "." in filename and filename.rsplit(".", 1)[1].lower() in allowed


def document_path(user_id: str, filename: str, now: Optional[float] = None) -> str:
    """<user_id>/id-<epoch ms>.<ext>, falling back to png when there is no extension."""
    ext = secure_filename(filename.rsplit(".", 1)[1].lower()) if "." in filename else ""
    ext = ext or "png"
    stamp = int((now if now is not None else time()) * 1000)
    return f"{user_id}/id-{stamp}.{ext}"


def upload_id_document(user_id: str, fs) -> str:
    if not fs or not fs.filename:
        raise ValidationError("Upload a valid ID image.")
    if not _ext_ok(fs.filename, ALLOWED_IMAGE):
        raise ValidationError("Image only. Use png, jpg, jpeg, webp, gif or heic.")

    path = document_path(user_id, fs.filename)
    bucket = current_app.config["KYC_BUCKET"]
    try:
        auth_service.get_client(service_role=True).storage.from_(bucket).upload(
            path,
            fs.read(),
            {"content-type": fs.mimetype or "application/octet-stream", "upsert": "true"},
        )
    except UpstreamError:
        raise
    except Exception as e:
        current_app.logger.warning("ID upload failed for %s: %s", user_id, e)
        raise UpstreamError(auth_service.error_message(e, "Upload failed")) from e

    current_app.logger.info("ID document stored for %s at %s", user_id, path)
    return path


def create_signed_url(path: str, ttl_seconds: int = SIGNED_URL_TTL_SECONDS) -> str:
    bucket = current_app.config["KYC_BUCKET"]
    try:
        data = auth_service.get_client(service_role=True).storage.from_(bucket).create_signed_url(
            path, ttl_seconds
        )
    except UpstreamError:
        raise
    except Exception as e:
        current_app.logger.warning("signed url failed for %s: %s", path, e)
        raise UpstreamError(auth_service.error_message(e, "Preview unavailable")) from e

    # Key spelling differs between SDK releases
    url = (data or {}).get("signedURL") or (data or {}).get("signedUrl")
    if not url:
        raise UpstreamError("Preview unavailable")
    return url
