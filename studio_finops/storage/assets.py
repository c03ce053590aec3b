"""Asset ownership pipeline.

Provider URLs are transient: they expire with the provider's own hosting.
Every generated artifact is streamed into owned object storage before a
result leaves the generation pipeline.

Storage backends:
- LocalObjectStore: a directory on disk (development, single host)
- S3ObjectStore: any S3-compatible bucket (AWS S3, Cloudflare R2, GCS interop)
"""

import logging
import mimetypes
import os
import tempfile
import uuid
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Optional

import boto3
import httpx
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

# Downloads larger than this spill from memory to a temp file
SPOOL_MAX_BYTES = 8 * 1024 * 1024
CHUNK_SIZE = 64 * 1024
DEFAULT_CONTENT_TYPE = "application/octet-stream"


class PersistenceError(Exception):
    """A generated asset could not be secured into owned storage.

    Money may already have been spent with the provider when this is raised.
    """

    def __init__(self, message: str, transient_url: Optional[str] = None, destination: Optional[str] = None):
        super().__init__(message)
        self.transient_url = transient_url
        self.destination = destination


def normalize_key(destination_path: str) -> str:
    """Turn a destination path into a safe object key."""
    key = PurePosixPath(destination_path.replace("\\", "/").lstrip("/"))
    if not key.parts or any(part in ("..", ".") for part in key.parts):
        raise ValueError(f"Invalid destination path: {destination_path}")
    return str(key)


def build_destination_path(project_id: str, capability: str, extension: str = ".png") -> str:
    """Fresh, collision-free destination for a newly generated asset."""
    if not extension.startswith("."):
        extension = f".{extension}"
    return f"projects/{project_id}/{capability}/{uuid.uuid4().hex}{extension}"


class ObjectStore(ABC):
    """Owned storage that returns durable URLs."""

    @abstractmethod
    def put(self, key: str, data: BinaryIO, content_type: str) -> str:
        """Store data under key, overwriting any previous object.

        Returns:
            Durable URL of the stored object

        Raises:
            PersistenceError: If the write fails
        """

    @abstractmethod
    def url_for(self, key: str) -> str:
        """Durable URL for a key, whether or not it exists yet."""


class LocalObjectStore(ObjectStore):
    """Stores objects as files under a root directory."""

    def __init__(self, root: str, public_url: Optional[str] = None):
        self.root = Path(root)
        self.public_url = public_url

    def path_for(self, key: str) -> Path:
        return self.root / normalize_key(key)

    def url_for(self, key: str) -> str:
        key = normalize_key(key)
        if self.public_url:
            return f"{self.public_url.rstrip('/')}/{key}"
        return self.path_for(key).resolve().as_uri()

    def put(self, key: str, data: BinaryIO, content_type: str) -> str:
        target = self.path_for(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            # Write next to the target and rename so readers never see a partial file
            fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=".upload-")
            try:
                with os.fdopen(fd, "wb") as out:
                    while True:
                        chunk = data.read(CHUNK_SIZE)
                        if not chunk:
                            break
                        out.write(chunk)
                os.replace(tmp_name, target)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise PersistenceError(f"Local write failed for {key}: {e}", destination=key) from e

        logger.debug("Stored %s (%s) at %s", key, content_type, target)
        return self.url_for(key)


class S3ObjectStore(ObjectStore):
    """S3-compatible object storage via boto3."""

    def __init__(
        self,
        bucket_name: str,
        endpoint_url: Optional[str] = None,
        public_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        region_name: Optional[str] = None,
        client=None,
    ):
        """Initialize S3 storage.

        Args:
            bucket_name: Bucket receiving assets
            endpoint_url: Custom endpoint for S3-compatible services (R2, MinIO)
            public_url: Optional public/CDN base URL for stored objects
            access_key_id: Access key (falls back to the boto3 credential chain)
            secret_access_key: Secret key (falls back to the boto3 credential chain)
            region_name: Bucket region
            client: Pre-built boto3 S3 client
        """
        if not bucket_name:
            raise ValueError("bucket_name is required and cannot be empty")
        self.bucket_name = bucket_name
        self.endpoint_url = endpoint_url
        self.public_url = public_url
        self._client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name=region_name,
            config=Config(
                signature_version="s3v4",
                retries={"max_attempts": 3, "mode": "adaptive"},
            ),
        )
        logger.info("S3 object store initialized for bucket: %s", bucket_name)

    def url_for(self, key: str) -> str:
        key = normalize_key(key)
        if self.public_url:
            return f"{self.public_url.rstrip('/')}/{key}"
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket_name}/{key}"
        return f"https://{self.bucket_name}.s3.amazonaws.com/{key}"

    def put(self, key: str, data: BinaryIO, content_type: str) -> str:
        key = normalize_key(key)
        try:
            self._client.upload_fileobj(
                data,
                self.bucket_name,
                key,
                ExtraArgs={"ContentType": content_type},
            )
        except (BotoCoreError, ClientError) as e:
            raise PersistenceError(f"Upload of {key} to {self.bucket_name} failed: {e}", destination=key) from e

        logger.info("Uploaded %s to bucket %s", key, self.bucket_name)
        return self.url_for(key)


class AssetOwnershipPipeline:
    """Moves transient provider artifacts into owned storage."""

    def __init__(self, store: ObjectStore, client: Optional[httpx.Client] = None, timeout: float = 120.0):
        self.store = store
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)

    def secure(self, transient_url: str, destination_path: str) -> str:
        """Stream a remote resource into owned storage.

        Re-securing the same live source to the same destination overwrites
        the object with identical bytes, so retries are idempotent. A source
        that has already expired fails with PersistenceError.

        Args:
            transient_url: Provider-hosted URL
            destination_path: Object key inside owned storage

        Returns:
            Durable URL in owned storage

        Raises:
            PersistenceError: If the download or the upload fails
        """
        key = normalize_key(destination_path)

        try:
            with self._client.stream("GET", transient_url) as response:
                if response.status_code >= 400:
                    raise PersistenceError(
                        f"Fetching {transient_url} returned HTTP {response.status_code}",
                        transient_url=transient_url,
                        destination=key,
                    )
                content_type = self._content_type(response, key)
                with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_BYTES) as buffer:
                    size = 0
                    for chunk in response.iter_bytes(CHUNK_SIZE):
                        buffer.write(chunk)
                        size += len(chunk)
                    buffer.seek(0)
                    durable_url = self.store.put(key, buffer, content_type)
        except httpx.HTTPError as e:
            logger.error("Could not fetch %s for %s, provider spend may be lost: %s",
                         transient_url, key, e)
            raise PersistenceError(
                f"Fetching {transient_url} failed: {e}", transient_url=transient_url, destination=key
            ) from e
        except PersistenceError as e:
            e.transient_url = e.transient_url or transient_url
            logger.error("Could not secure %s into %s, provider spend may be lost: %s",
                         transient_url, key, e)
            raise

        logger.info("Asset secured at %s (%d bytes, %s)", durable_url, size, content_type)
        return durable_url

    @staticmethod
    def _content_type(response: httpx.Response, key: str) -> str:
        header = response.headers.get("content-type")
        if header:
            return header
        guessed, _ = mimetypes.guess_type(key)
        return guessed or DEFAULT_CONTENT_TYPE

    def close(self) -> None:
        self._client.close()
