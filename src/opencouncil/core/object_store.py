"""Read-only access to the municipal documents bucket."""

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence

import boto3

from .errors import ObjectStoreError

logger = logging.getLogger(__name__)


@dataclass
class ObjectSummary:
    key: str
    size: int
    last_modified: Optional[datetime] = None


def create_s3_client(region: str) -> Any:
    session = boto3.session.Session(region_name=region)
    return session.client("s3")


class S3ObjectStore:
    """List and fetch objects from one bucket."""

    def __init__(self, client: Any, bucket: str):
        self.client = client
        self.bucket = bucket

    def list_objects(
        self,
        prefix: str = "",
        extensions: Optional[Sequence[str]] = None
    ) -> Iterator[ObjectSummary]:
        """Yield objects under `prefix`, following continuation tokens until exhausted."""
        continuation_token = None
        while True:
            params = {"Bucket": self.bucket, "Prefix": prefix}
            if continuation_token:
                params["ContinuationToken"] = continuation_token
            response = self.client.list_objects_v2(**params)

            for obj in response.get("Contents", []):
                key = obj.get("Key")
                if not key or key.endswith("/"):
                    continue
                if extensions and not key.lower().endswith(tuple(extensions)):
                    continue
                yield ObjectSummary(
                    key=key,
                    size=obj.get("Size", 0),
                    last_modified=obj.get("LastModified"),
                )

            continuation_token = response.get("NextContinuationToken")
            if not response.get("IsTruncated") or not continuation_token:
                break

    def get_bytes(self, key: str) -> bytes:
        response = self.client.get_object(Bucket=self.bucket, Key=key)
        body = response.get("Body")
        if body is None:
            raise ObjectStoreError(f"Empty response body for {key}")
        return body.read()

    def download(self, key: str, destination: Path) -> Path:
        """Write an object to `destination` and return the path."""
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(self.get_bytes(key))
        logger.debug(f"Downloaded s3://{self.bucket}/{key} to {destination}")
        return destination
