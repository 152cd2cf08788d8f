"""S3-compatible object storage (Cloudflare R2, MinIO, AWS S3).

Clients upload directly to the bucket with a presigned ``PUT`` URL; the API
only signs URLs, inspects object sizes and deletes objects.
"""

from __future__ import annotations

import logging
from typing import Any

from botocore.exceptions import ClientError

from cardboard_api.config import APISettings

logger = logging.getLogger(__name__)

_MISSING_CODES = frozenset({"404", "NoSuchKey", "NotFound"})


class BlobStore:
    """Presign/head/delete against a single bucket.

    Parameters
    ----------
    bucket:
        Bucket name.
    public_url:
        Base URL objects are served from; ``public_url/key`` is returned to
        clients.
    client:
        A boto3 S3 client.  Built from *settings* by :meth:`from_settings`.
    """

    def __init__(self, bucket: str, public_url: str, client: Any) -> None:
        self._bucket = bucket
        self._public_url = public_url.rstrip("/")
        self._client = client

    @classmethod
    def from_settings(cls, settings: APISettings) -> BlobStore:
        import boto3

        session_kwargs: dict[str, Any] = {}
        if settings.s3_access_key_id.get_secret_value():
            session_kwargs["aws_access_key_id"] = settings.s3_access_key_id.get_secret_value()
        if settings.s3_secret_access_key.get_secret_value():
            session_kwargs["aws_secret_access_key"] = settings.s3_secret_access_key.get_secret_value()
        if settings.s3_region:
            session_kwargs["region_name"] = settings.s3_region

        session = boto3.Session(**session_kwargs)
        client = session.client("s3", endpoint_url=settings.s3_endpoint_url)
        return cls(settings.s3_bucket, settings.s3_public_url, client)

    def public_url(self, key: str) -> str:
        if not self._public_url:
            return key
        return f"{self._public_url}/{key}"

    def presign_put(self, key: str, content_type: str, expires_in: int) -> str:
        """Return a URL that accepts a single ``PUT`` of *key* until expiry."""
        return self._client.generate_presigned_url(
            "put_object",
            Params={"Bucket": self._bucket, "Key": key, "ContentType": content_type},
            ExpiresIn=expires_in,
        )

    def head_size(self, key: str) -> int | None:
        """Size of the stored object in bytes, or ``None`` if it does not exist."""
        try:
            response = self._client.head_object(Bucket=self._bucket, Key=key)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in _MISSING_CODES:
                return None
            raise
        return int(response.get("ContentLength") or 0)

    def delete(self, key: str) -> None:
        """Delete *key*.  Deleting a missing object is not an error."""
        try:
            self._client.delete_object(Bucket=self._bucket, Key=key)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in _MISSING_CODES:
                logger.debug("Delete of missing object %s ignored", key)
                return
            raise
