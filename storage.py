# storage.py
import os
from functools import lru_cache
from typing import Optional

import boto3
from botocore.config import Config

from settings import settings

# --- R2 / S3 client ---------------------------------------------------------

# NOTE:
# - endpoint_url MUST be the S3 API endpoint (the cloudflarestorage.com host),
#   NOT the public/dev domain. Region must be "auto" and path-style is required.


@lru_cache(maxsize=1)
def _s3():
    endpoint = settings.r2_endpoint_url.rstrip("/") or None
    bucket = settings.r2_bucket
    if endpoint and bucket and endpoint.endswith(f"/{bucket}"):
        endpoint = endpoint[: -(len(bucket) + 1)]
    return boto3.client(
        "s3",
        endpoint_url=endpoint,
        aws_access_key_id=settings.r2_access_key_id or None,
        aws_secret_access_key=settings.r2_secret_access_key or None,
        region_name="auto",
        config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
    )


def use_r2() -> bool:
    return settings.storage == "r2"


def _public_or_signed_url(key: str, expires: int = 3600) -> str:
    """
    Prefer the configured public base (custom domain / r2.dev) for read URLs.
    Fall back to a presigned GET URL if no public base is set.
    """
    public_base = settings.r2_public_base.rstrip("/")
    if public_base:
        return f"{public_base}/{key.lstrip('/')}"
    return _s3().generate_presigned_url(
        "get_object",
        Params={"Bucket": settings.r2_bucket, "Key": key},
        ExpiresIn=expires,
    )


def upload_bytes_and_get_url(
    data: bytes,
    *,
    key: str,
    content_type: str = "image/png",
    expires: int = 3600,
) -> str:
    """Upload to R2 and return the URL clients (and Runware) should fetch."""
    _s3().put_object(
        Bucket=settings.r2_bucket,
        Key=key,
        Body=data,
        ContentType=content_type,
    )
    return _public_or_signed_url(key, expires=expires)


def get_object_stream(key: str):
    """Returns (streaming_body, content_type) for the /files/{key} route."""
    obj = _s3().get_object(Bucket=settings.r2_bucket, Key=key)
    return obj["Body"], obj.get("ContentType", "application/octet-stream")


# --- Local fallback ---------------------------------------------------------

def local_path(key: str, local_dir: Optional[str] = None) -> str:
    base = os.path.abspath(local_dir or settings.local_dir)
    path = os.path.abspath(os.path.join(base, key))
    if os.path.commonpath([base, path]) != base:
        raise ValueError(f"invalid storage key: {key}")
    return path


def save_local(data: bytes, key: str, local_dir: Optional[str] = None) -> str:
    """Write under the local dir and return the public /files/local/ URL."""
    path = local_path(key, local_dir)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)
    return f"{settings.public_base_url.rstrip('/')}/files/local/{key.lstrip('/')}"


def store_bytes(data: bytes, key: str, content_type: str = "image/png") -> str:
    if use_r2():
        return upload_bytes_and_get_url(data, key=key, content_type=content_type)
    return save_local(data, key)
