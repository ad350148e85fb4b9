"""
Observation photo transfer between the local file system and Supabase Storage.

Photos are stored in the bucket under '<user_id>/<observation_id>.jpg'.
"""

import base64
import logging
import shutil
import time
from pathlib import Path
from typing import Optional, Union

import requests

from user_config import OBSERVATIONS_BUCKET, UPLOAD_SIGNED_URL_TTL, DOWNLOAD_SIGNED_URL_TTL

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class AttachmentError(Exception):
    """A photo could not be read, uploaded, signed or downloaded."""


def storage_path(user_id: str, file_id: str) -> str:
    """Object path of an observation photo inside the bucket."""
    return f"{user_id}/{file_id}.jpg"


def _local_path(uri: PathLike) -> Path:
    """Accept plain paths and file:// URIs."""
    text = str(uri)
    if text.startswith("file://"):
        text = text[len("file://"):]
    return Path(text)


def encode_for_upload(local_path: PathLike) -> bytes:
    """Read a local photo as base64 text and decode it to the bytes sent to storage."""
    path = _local_path(local_path)
    try:
        encoded = base64.b64encode(path.read_bytes()).decode("ascii")
    except OSError as e:
        raise AttachmentError(f"Cannot read image {path}: {e}") from e
    return base64.b64decode(encoded)


def upload_observation_image(client, user_id: str, observation_id: str, local_path: PathLike) -> str:
    """Upload a photo and return a long-lived signed URL to store as image_url.

    Raises:
        AttachmentError: if the file can't be read, the upload fails or signing fails.
    """
    data = encode_for_upload(local_path)
    path = storage_path(user_id, observation_id)
    bucket = client.storage.from_(OBSERVATIONS_BUCKET)

    result = bucket.upload(path, data, content_type="image/jpeg", upsert=True)
    if result.error is not None:
        raise AttachmentError(f"Upload of {path} failed: {result.error}")

    signed = bucket.create_signed_url(path, UPLOAD_SIGNED_URL_TTL)
    if signed.error is not None or not signed.data:
        raise AttachmentError(f"Signing {path} failed: {signed.error}")
    logger.debug(f"Uploaded observation photo: {path}")
    return signed.data["signedUrl"]


def resolve_download_url(client, stored_url: str, owner_user_id: str, file_id: str) -> str:
    """Return a URL that can be fetched right now.

    A stored URL with a query string is treated as an already signed, unexpired URL.
    Otherwise a short-lived URL is signed for '<owner>/<file_id>.jpg'; if signing fails
    the stored URL is returned unchanged.
    """
    if "?" in stored_url:
        return stored_url

    path = storage_path(owner_user_id, file_id)
    signed = client.storage.from_(OBSERVATIONS_BUCKET).create_signed_url(path, DOWNLOAD_SIGNED_URL_TTL)
    if signed.error is not None or not signed.data:
        logger.warning(f"Could not re-sign {path}: {signed.error}")
        return stored_url
    return signed.data["signedUrl"]


def download(url: str, dest_dir: PathLike, file_name: str) -> str:
    """Fetch a photo and write it to dest_dir/file_name. Returns the local path.

    Raises:
        AttachmentError: on transport failure or a non-2xx response.
    """
    try:
        response = requests.get(url, timeout=60)
    except requests.exceptions.RequestException as e:
        raise AttachmentError(f"Failed to fetch image: {e}") from e
    if not response.ok:
        raise AttachmentError(f"Failed to fetch image: {response.status_code}")

    dest = Path(dest_dir) / file_name
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_bytes(response.content)
    logger.debug(f"Downloaded photo -> {dest}")
    return str(dest)


def import_image(source: PathLike, media_dir: PathLike, file_name: Optional[str] = None) -> str:
    """Copy a picked photo into the app's media directory and return the new path."""
    name = file_name or f"{int(time.time() * 1000)}.jpg"
    dest = Path(media_dir) / name
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(_local_path(source), dest)
    return str(dest)
