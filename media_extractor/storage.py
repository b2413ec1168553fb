"""Archive binaries to Google Cloud Storage."""
from typing import Optional

from google.api_core import exceptions as gcloud_exceptions
from google.auth.exceptions import GoogleAuthError
from google.cloud import storage

from media_extractor import settings
from media_extractor.errors import StorageError
from media_extractor.credentials import service_account_credentials
from media_extractor.logging_conf import logger

PUBLIC_URL = "https://storage.googleapis.com/{bucket}/{path}"


class ObjectStorage:
    """Uploads bytes to a bucket and makes them publicly readable."""

    def __init__(self, bucket_name: Optional[str] = None, client: Optional[storage.Client] = None):
        self.bucket_name = bucket_name or settings.GCS_BUCKET_NAME
        self._client = client

    @property
    def enabled(self) -> bool:
        return bool(self.bucket_name)

    @property
    def client(self) -> storage.Client:
        if self._client is None:
            credentials = service_account_credentials()
            if credentials is not None:
                self._client = storage.Client(credentials=credentials, project=credentials.project_id)
            else:
                self._client = storage.Client()
        return self._client

    def store(self, content: bytes, path: str, content_type: Optional[str] = None) -> str:
        """
        Upload `content` to `path` and return its public URL.

        Raises:
            StorageError if no bucket is configured or the upload fails
        """
        if not self.bucket_name:
            raise StorageError("GCS_BUCKET_NAME is not configured")
        try:
            blob = self.client.bucket(self.bucket_name).blob(path)
            blob.upload_from_string(content, content_type=content_type or "application/octet-stream")
            blob.make_public()
        except (gcloud_exceptions.GoogleAPIError, GoogleAuthError) as e:
            raise StorageError(f"Upload to gs://{self.bucket_name}/{path} failed: {e}") from e
        url = PUBLIC_URL.format(bucket=self.bucket_name, path=path)
        logger.debug(f"Stored {len(content)} bytes at {url}")
        return url
