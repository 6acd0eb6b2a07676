from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

LOGGER = logging.getLogger(__name__)

MAX_KEY_LENGTH = 127
MAX_VALUE_LENGTH = 255
MAX_TAGS_PER_VOLUME = 50
RESERVED_KEY_PREFIXES: tuple[str, ...] = ("aws:", "kubernetes.io/")
_ALLOWED_PUNCTUATION = frozenset("_.:/=+-@")


def _has_allowed_characters(text: str) -> bool:
    """Unicode letters, digits, whitespace and the punctuation EC2 accepts in tags."""
    for char in text:
        if char in _ALLOWED_PUNCTUATION or char.isspace():
            continue
        if char.isalnum():
            continue
        return False
    return True


def is_reserved_key(key: str) -> bool:
    lowered = key.lower()
    return any(lowered.startswith(prefix) for prefix in RESERVED_KEY_PREFIXES)


def is_valid_tag_key(key: str) -> bool:
    """Return True if *key* can be written to an EBS volume by this controller."""
    if not key or len(key) > MAX_KEY_LENGTH:
        return False
    if key != key.strip():
        return False
    if is_reserved_key(key):
        return False
    return _has_allowed_characters(key)


def is_valid_tag_value(value: str) -> bool:
    if len(value) > MAX_VALUE_LENGTH:
        return False
    return _has_allowed_characters(value)


@dataclass(frozen=True)
class ResolvedTags:
    """Desired tags for one PVC plus the number of entries dropped as invalid."""

    tags: dict[str, str]
    invalid: int = 0


@dataclass(frozen=True)
class TagDiff:
    """Changes needed to move a volume from its actual tags to the desired ones."""

    additions: dict[str, str] = field(default_factory=dict)
    removals: frozenset[str] = frozenset()

    @property
    def empty(self) -> bool:
        return not self.additions and not self.removals


def validate_default_tags(raw: Any) -> dict[str, str]:
    """Normalize the JSON-decoded default tag object.

    Raises ``ValueError`` on the first entry EC2 would reject so a bad
    deployment fails at startup instead of dropping tags on every event.
    """
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError("default tags must be a JSON object of key/value pairs")

    tags: dict[str, str] = {}
    for key, value in raw.items():
        if not isinstance(value, str):
            raise ValueError(f"default tag {key!r} must have a string value")
        if not is_valid_tag_key(key):
            raise ValueError(f"default tag key {key!r} is not a valid EBS tag key")
        if not is_valid_tag_value(value):
            raise ValueError(f"default tag value for {key!r} is not a valid EBS tag value")
        tags[key] = value
    if len(tags) > MAX_TAGS_PER_VOLUME:
        raise ValueError(
            f"default tags define {len(tags)} keys, more than the "
            f"{MAX_TAGS_PER_VOLUME} allowed per volume"
        )
    return tags


def resolve_desired_tags(
    annotations: Mapping[str, str] | None,
    prefix: str,
    default_tags: Mapping[str, str],
) -> ResolvedTags:
    """Merge default tags with ``<prefix>/<tagkey>`` annotations.

    Annotation values override defaults of the same key. Entries EC2 would
    reject are skipped and counted; annotations outside the prefix are
    ignored without being counted.
    """
    tags = dict(default_tags)
    invalid = 0
    annotation_prefix = f"{prefix}/"

    for annotation_key, value in (annotations or {}).items():
        if not annotation_key.startswith(annotation_prefix):
            continue
        tag_key = annotation_key[len(annotation_prefix):]
        tag_value = "" if value is None else str(value)
        if not is_valid_tag_key(tag_key):
            LOGGER.warning(
                "Skipping invalid tag key %r from annotation %s", tag_key, annotation_key
            )
            invalid += 1
            continue
        if not is_valid_tag_value(tag_value):
            LOGGER.warning(
                "Skipping invalid value for tag %r from annotation %s", tag_key, annotation_key
            )
            invalid += 1
            continue
        tags[tag_key] = tag_value

    return ResolvedTags(tags=tags, invalid=invalid)


class ManagedKeySpace:
    """Set of tag keys this controller is allowed to remove from a volume.

    Ownership is pattern based: every key fully matching ``pattern``.
    Without a pattern nothing is managed and no tag is ever removed.
    Reserved keys are never managed.
    """

    def __init__(self, pattern: str | None = None) -> None:
        self.pattern = re.compile(pattern) if pattern else None

    def __bool__(self) -> bool:
        return self.pattern is not None

    def __contains__(self, key: object) -> bool:
        if self.pattern is None or not isinstance(key, str) or is_reserved_key(key):
            return False
        return self.pattern.fullmatch(key) is not None


def compute_tag_diff(
    desired: Mapping[str, str],
    actual: Mapping[str, str],
    managed: ManagedKeySpace,
) -> TagDiff:
    additions = {
        key: value for key, value in desired.items() if actual.get(key) != value
    }
    removals = frozenset(
        key for key in actual if key not in desired and key in managed
    )
    return TagDiff(additions=additions, removals=removals)
