"""Object storage gateway for submitted audio."""

import logging
import os
from io import BytesIO

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from speakeval.config import get_settings
from speakeval.services.errors import StorageError

logger = logging.getLogger(__name__)

settings = get_settings()

EXTENSION_MIME_TYPES = {
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".ogg": "audio/ogg",
    ".m4a": "audio/mp4",
    ".flac": "audio/flac",
    ".webm": "audio/webm",
}


def mime_type_for(path: str) -> str:
    """Guess the audio MIME type from a path's extension (webm by default)."""
    ext = os.path.splitext(path.lower())[1]
    return EXTENSION_MIME_TYPES.get(ext, "audio/webm")


class StorageService:
    """Service for reading and writing audio in MinIO/S3."""

    def __init__(self):
        self._client = None
        self._bucket = settings.minio_bucket

    @property
    def client(self):
        """Lazy initialization of S3 client."""
        if self._client is None:
            endpoint_url = f"{'https' if settings.minio_use_ssl else 'http'}://{settings.minio_endpoint}"
            self._client = boto3.client(
                "s3",
                endpoint_url=endpoint_url,
                aws_access_key_id=settings.minio_access_key,
                aws_secret_access_key=settings.minio_secret_key,
                config=Config(signature_version="s3v4", retries={"max_attempts": 2}),
            )
            self._ensure_bucket()
        return self._client

    def _ensure_bucket(self):
        """Create bucket if it doesn't exist."""
        try:
            self._client.head_bucket(Bucket=self._bucket)
        except ClientError:
            self._client.create_bucket(Bucket=self._bucket)

    def segment_path(self, job_id: str, segment_key: str, content_type: str) -> str:
        """Storage path for an audio segment uploaded with the ingest request."""
        return f"jobs/{job_id}/segments/{segment_key}{self._get_extension(content_type)}"

    def get(self, path: str) -> bytes:
        """Download an object's bytes."""
        try:
            response = self.client.get_object(Bucket=self._bucket, Key=path)
            return response["Body"].read()
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to read {path}: {e}") from e

    def put(self, path: str, data: bytes, content_type: str) -> str:
        """Upload bytes and return a presigned URL for the object."""
        try:
            self.client.upload_fileobj(
                BytesIO(data),
                self._bucket,
                path,
                ExtraArgs={"ContentType": content_type},
            )
            return self.generate_presigned_url(path)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to write {path}: {e}") from e

    def generate_presigned_url(self, path: str, expires_in: int = 3600) -> str:
        """Generate a presigned URL for downloading a file."""
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self._bucket, "Key": path},
            ExpiresIn=expires_in,
        )

    def delete_job_files(self, job_id: str):
        """Delete audio uploaded for a job."""
        prefix = f"jobs/{job_id}/"
        response = self.client.list_objects_v2(Bucket=self._bucket, Prefix=prefix)

        if "Contents" in response:
            objects = [{"Key": obj["Key"]} for obj in response["Contents"]]
            self.client.delete_objects(
                Bucket=self._bucket, Delete={"Objects": objects}
            )

    def _get_extension(self, content_type: str) -> str:
        """Get file extension from content type."""
        mapping = {
            "audio/wav": ".wav",
            "audio/x-wav": ".wav",
            "audio/mpeg": ".mp3",
            "audio/mp3": ".mp3",
            "audio/ogg": ".ogg",
            "audio/flac": ".flac",
            "audio/mp4": ".m4a",
            "audio/m4a": ".m4a",
            "audio/webm": ".webm",
        }
        return mapping.get(content_type.split(";")[0].strip(), ".webm")

    def health_check(self) -> bool:
        """Check if storage is accessible."""
        try:
            self.client.head_bucket(Bucket=self._bucket)
            return True
        except Exception:
            return False


# Singleton instance
storage_service = StorageService()
