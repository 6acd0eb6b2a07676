from __future__ import annotations

import logging
import random
import re
import threading
import time
from collections.abc import Callable, Collection, Mapping
from typing import Any, TypeVar

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from botocore.utils import InstanceMetadataRegionFetcher

from ebs_tagger.src.metrics import METRICS
from ebs_tagger.src.tags import MAX_TAGS_PER_VOLUME

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

AWS_REGION_PATTERN = re.compile(r"^[a-z]{2}((-gov)|(-iso(b?)))?-[a-z]+-\d{1}$")
EC2_CONNECT_TIMEOUT_SECONDS = 5
EC2_READ_TIMEOUT_SECONDS = 10

RETRYABLE_ERROR_CODES = frozenset(
    {
        "RequestLimitExceeded",
        "Throttling",
        "ThrottlingException",
        "RequestThrottled",
        "TooManyRequestsException",
        "InternalError",
        "InternalFailure",
        "ServiceUnavailable",
        "Unavailable",
    }
)
_TRANSIENT_TRANSPORT_ERRORS = (
    EndpointConnectionError,
    ConnectionClosedError,
    ConnectTimeoutError,
    ReadTimeoutError,
)


class TagClientError(RuntimeError):
    """An EC2 tag operation failed for a single volume.

    ``retryable`` is True when the failure was transient but every attempt
    was used or the retry was cancelled; the reconciler treats both kinds as
    a failed outcome.
    """

    def __init__(
        self,
        volume_id: str,
        operation: str,
        code: str,
        message: str,
        *,
        retryable: bool = False,
    ) -> None:
        super().__init__(f"{operation} on {volume_id} failed ({code}): {message}")
        self.volume_id = volume_id
        self.operation = operation
        self.code = code
        self.retryable = retryable


class TagLimitExceededError(TagClientError):
    """Applying the requested tags would exceed the per-volume tag bound."""


def is_retryable(exc: Exception) -> bool:
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        if error.get("Code", "") in RETRYABLE_ERROR_CODES:
            return True
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        return isinstance(status, int) and status >= 500
    return isinstance(exc, _TRANSIENT_TRANSPORT_ERRORS)


def _error_code(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code", "Unknown"))
    return type(exc).__name__


class TagClient:
    """Reads and writes EBS volume tags with a bounded retry policy.

    Each EC2 call is attempted up to ``max_attempts`` times.  Transient
    failures (throttling, 5xx, connection errors) sleep for
    ``base_backoff_seconds * 2**(attempt - 1)`` capped at
    ``max_backoff_seconds`` and jittered between 50% and 150%; anything else
    surfaces immediately as :class:`TagClientError`.  Setting ``stop_event``
    (the dispatcher cancellation event) aborts a pending backoff and fails
    the call instead of retrying.

    The boto3 EC2 client is shared across namespace threads; botocore clients
    are thread-safe.
    """

    def __init__(
        self,
        ec2_client: Any,
        max_attempts: int = 5,
        base_backoff_seconds: float = 0.5,
        max_backoff_seconds: float = 8.0,
        stop_event: threading.Event | None = None,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.ec2_client = ec2_client
        self.max_attempts = max_attempts
        self.base_backoff_seconds = base_backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self._stop_event = stop_event
        self._sleep_fn = sleep_fn or time.sleep

    def _backoff(self, attempt: int) -> float:
        delay = min(self.max_backoff_seconds, self.base_backoff_seconds * 2 ** (attempt - 1))
        return delay * (0.5 + random.random())  # noqa: S311

    def _sleep(self, seconds: float) -> bool:
        """Back off for *seconds*; return True if cancellation was requested."""
        if self._stop_event is not None:
            return self._stop_event.wait(timeout=seconds)
        self._sleep_fn(seconds)
        return False

    def _call(self, operation: str, volume_id: str, fn: Callable[[], T]) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except (ClientError, BotoCoreError) as exc:
                code = _error_code(exc)
                if not is_retryable(exc):
                    raise TagClientError(volume_id, operation, code, str(exc)) from exc
                if attempt >= self.max_attempts:
                    raise TagClientError(
                        volume_id,
                        operation,
                        code,
                        f"giving up after {attempt} attempts: {exc}",
                        retryable=True,
                    ) from exc
                delay = self._backoff(attempt)
                METRICS.tag_api_retries_total.labels(operation=operation).inc()
                LOGGER.warning(
                    "%s on %s failed with %s; retrying attempt %d/%d in %.2fs",
                    operation,
                    volume_id,
                    code,
                    attempt + 1,
                    self.max_attempts,
                    delay,
                )
                if self._sleep(delay):
                    raise TagClientError(
                        volume_id,
                        operation,
                        code,
                        f"cancelled after {attempt} attempts: {exc}",
                        retryable=True,
                    ) from exc

    def get_tags(self, volume_id: str) -> dict[str, str]:
        """Return the tags currently present on *volume_id*."""

        def _describe() -> dict[str, str]:
            tags: dict[str, str] = {}
            paginator = self.ec2_client.get_paginator("describe_tags")
            pages = paginator.paginate(
                Filters=[
                    {"Name": "resource-id", "Values": [volume_id]},
                    {"Name": "resource-type", "Values": ["volume"]},
                ]
            )
            for page in pages:
                for tag in page.get("Tags", []):
                    tags[tag["Key"]] = tag.get("Value", "")
            return tags

        return self._call("DescribeTags", volume_id, _describe)

    def apply_tags(
        self,
        volume_id: str,
        additions: Mapping[str, str],
        removals: Collection[str] = (),
        current: Mapping[str, str] | None = None,
    ) -> None:
        """Create/overwrite *additions* and delete *removals* on *volume_id*.

        When *current* is given, the resulting tag count is checked against
        the per-volume bound first; the request is rejected rather than
        truncated.
        """
        if current is not None:
            # aws: system tags do not count against the per-volume limit.
            resulting = {
                key
                for key in (set(current) - set(removals)) | set(additions)
                if not key.lower().startswith("aws:")
            }
            if len(resulting) > MAX_TAGS_PER_VOLUME:
                raise TagLimitExceededError(
                    volume_id,
                    "CreateTags",
                    "TagLimitExceeded",
                    f"volume would carry {len(resulting)} tags, "
                    f"more than the {MAX_TAGS_PER_VOLUME} allowed",
                )

        if additions:
            tag_list = [{"Key": key, "Value": value} for key, value in sorted(additions.items())]
            self._call(
                "CreateTags",
                volume_id,
                lambda: self.ec2_client.create_tags(Resources=[volume_id], Tags=tag_list),
            )
        if removals:
            removal_list = [{"Key": key} for key in sorted(removals)]
            self._call(
                "DeleteTags",
                volume_id,
                lambda: self.ec2_client.delete_tags(Resources=[volume_id], Tags=removal_list),
            )


def build_ec2_client(region: str) -> Any:
    """Return an EC2 client for *region* with botocore's own retries disabled.

    :class:`TagClient` applies its retry policy on top, so the botocore
    client makes exactly one attempt per call.  Connect and read timeouts are
    kept well below the coordinator stop timeout so a hung call cannot keep a
    namespace thread alive past the lease.
    """
    session = boto3.session.Session(region_name=region)
    return session.client(
        "ec2",
        config=Config(
            connect_timeout=EC2_CONNECT_TIMEOUT_SECONDS,
            read_timeout=EC2_READ_TIMEOUT_SECONDS,
            retries={"total_max_attempts": 1, "mode": "standard"},
        ),
    )


def metadata_region() -> str | None:
    """Look up the region from EC2 instance metadata (IMDS)."""
    try:
        return InstanceMetadataRegionFetcher(timeout=2, num_attempts=2).retrieve_region()
    except BotoCoreError:
        LOGGER.debug("Instance metadata region lookup failed", exc_info=True)
        return None


def is_valid_region(region: str | None) -> bool:
    return bool(region) and AWS_REGION_PATTERN.match(region or "") is not None
