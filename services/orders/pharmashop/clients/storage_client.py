"""
HTTP client for the external object storage (Cloudinary upload API).

Prescription files are uploaded here and only their URL is kept on the order.
"""
import hashlib
import logging
import time
from typing import Optional
from urllib.parse import urlparse

import httpx

from .. import config
from ..exceptions import UpstreamFailure

logger = logging.getLogger(__name__)

STORAGE_API_URL = "https://api.cloudinary.com/v1_1"


def is_configured() -> bool:
    return bool(config.CLOUDINARY_CLOUD_NAME and config.CLOUDINARY_API_KEY and config.CLOUDINARY_API_SECRET)


def sign_params(params: dict, api_secret: str) -> str:
    """
    Sign request parameters the way the upload API expects.

    Parameters are sorted by name, joined as ``key=value`` with ``&`` and the
    API secret is appended before hashing with SHA-1.
    """
    to_sign = "&".join(f"{key}={params[key]}" for key in sorted(params) if params[key] not in (None, ""))
    return hashlib.sha1(f"{to_sign}{api_secret}".encode("utf-8")).hexdigest()


def extract_public_id(url: str) -> Optional[str]:
    """
    Extract the public id from a delivery URL.

    ``https://res.cloudinary.com/<cloud>/image/upload/v17/<folder>/<name>.jpg``
    yields ``<folder>/<name>``.
    """
    if not url or "cloudinary.com" not in url:
        return None
    parts = urlparse(url).path.split("/")
    if "upload" not in parts:
        return None
    after_upload = parts[parts.index("upload") + 1:]
    if after_upload and after_upload[0].startswith("v") and after_upload[0][1:].isdigit():
        after_upload = after_upload[1:]
    if not after_upload:
        return None
    return "/".join(after_upload).rsplit(".", 1)[0]


async def upload_file(
    data: bytes,
    filename: str,
    content_type: str,
    folder: Optional[str] = None,
) -> str:
    """
    Upload a file and return its secure URL.

    Args:
        data: File content
        filename: Original filename
        content_type: MIME type of the file
        folder: Destination folder (defaults to the prescription folder)

    Returns:
        The HTTPS URL of the stored file

    Raises:
        UpstreamFailure: if storage is not configured or the upload fails
    """
    if not is_configured():
        raise UpstreamFailure("Failed to upload prescription", detail="Object storage is not configured")

    params = {
        "folder": folder or config.PRESCRIPTION_UPLOAD_FOLDER,
        "timestamp": str(int(time.time())),
    }
    form = {
        **params,
        "api_key": config.CLOUDINARY_API_KEY,
        "signature": sign_params(params, config.CLOUDINARY_API_SECRET),
    }
    url = f"{STORAGE_API_URL}/{config.CLOUDINARY_CLOUD_NAME}/auto/upload"

    try:
        async with httpx.AsyncClient(timeout=config.STORAGE_TIMEOUT) as client:
            response = await client.post(url, data=form, files={"file": (filename, data, content_type)})
            response.raise_for_status()
            secure_url = response.json().get("secure_url")
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"Prescription upload failed for '{filename}': {e}")
        raise UpstreamFailure("Failed to upload prescription", detail=str(e))

    if not secure_url:
        raise UpstreamFailure("Failed to upload prescription", detail="Storage response has no secure_url")

    logger.info(f"Prescription uploaded: {secure_url}")
    return secure_url


async def delete_file(url: str) -> bool:
    """
    Delete a previously uploaded file. Used to compensate a failed order.

    Failures are logged and reported as False, never raised.
    """
    public_id = extract_public_id(url)
    if public_id is None or not is_configured():
        logger.info(f"Not a managed storage URL, skipping deletion: {url}")
        return False

    params = {"public_id": public_id, "timestamp": str(int(time.time()))}
    form = {
        **params,
        "api_key": config.CLOUDINARY_API_KEY,
        "signature": sign_params(params, config.CLOUDINARY_API_SECRET),
    }
    resource_type = "raw" if "/raw/upload/" in url else "image"
    endpoint = f"{STORAGE_API_URL}/{config.CLOUDINARY_CLOUD_NAME}/{resource_type}/destroy"

    try:
        async with httpx.AsyncClient(timeout=config.STORAGE_TIMEOUT) as client:
            response = await client.post(endpoint, data=form)
            response.raise_for_status()
        logger.info(f"Deleted stored file {public_id}")
        return True
    except httpx.HTTPError as e:
        logger.error(f"Failed to delete stored file {public_id}: {e}")
        return False
