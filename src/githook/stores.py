"""
Clients for the services a release build writes to.

boto3 is synchronous, so its calls run in a worker thread to keep the event
loop free for other deliveries.
"""

import asyncio
import posixpath
from typing import Any

import aiohttp
import boto3
from sanic.log import logger

from githook.config import AwsSection
from githook.exceptions import ActionFailedError


def release_key(app_id: str) -> str:
    return f"{app_id}/release"


class ArtifactStore:
    def __init__(self, client: Any, bucket: str, release_path: str, hostname: str):
        self.client = client
        self.bucket = bucket
        self.release_path = release_path
        self.hostname = hostname

    @classmethod
    def from_config(cls, aws: AwsSection) -> "ArtifactStore":
        return cls(
            boto3.client("s3", region_name=aws.region),
            bucket=aws.bucket_release,
            release_path=aws.path_release,
            hostname=aws.hostname,
        )

    def key(self, app_id: str, commit_id: str) -> str:
        return posixpath.join(self.release_path, app_id, f"{commit_id}.tgz")

    def url(self, key: str) -> str:
        return f"https://{self.hostname}/{self.bucket}/{key}"

    async def upload(self, filename: str, key: str):
        logger.debug("Uploading %s to s3://%s/%s", filename, self.bucket, key)
        await asyncio.to_thread(
            self.client.upload_file,
            filename,
            self.bucket,
            key,
            ExtraArgs={"ACL": "private", "ContentType": "application/gzip"},
        )


class KeyValueRegistry:
    """Consul key/value store, spoken to over its HTTP API."""

    def __init__(self, session: aiohttp.ClientSession, url: str):
        self.session = session
        self.url = url.rstrip("/")

    async def set(self, key: str, value: str):
        logger.debug("Setting consul key %s = %s", key, value)
        async with self.session.put(
            f"{self.url}/v1/kv/{key}", data=value.encode()
        ) as resp:
            resp.raise_for_status()
            stored = await resp.json()

        if stored is not True:
            raise ActionFailedError(f"Consul refused to store {key}")
        return stored


class ParameterStore:
    """AWS SSM parameter store."""

    def __init__(self, client: Any, environment: str):
        self.client = client
        self.environment = environment

    @classmethod
    def from_config(cls, aws: AwsSection, environment: str) -> "ParameterStore":
        return cls(boto3.client("ssm", region_name=aws.region), environment)

    def name(self, app_id: str) -> str:
        return f"/{self.environment}/{release_key(app_id)}"

    async def put(self, name: str, value: str):
        logger.debug("Putting parameter %s = %s", name, value)
        return await asyncio.to_thread(
            self.client.put_parameter,
            Name=name,
            Value=value,
            Type="String",
            Overwrite=True,
        )
