"""
provisioner_core/naming.py
──────────────────────────
Remote-visible resource names.

Every pod, container group, ARM deployment and generated volume gets its
name from generate_name(). Both platforms hold names to the DNS label rules:

  • at most 63 characters
  • lowercase alphanumerics and '-'
  • must start and end with an alphanumeric

The random suffix is drawn from a consonant + digit alphabet. No vowels means
no accidental dictionary words in resource names; no '-' or uppercase means
the suffix is always DNS safe on its own.
"""

from __future__ import annotations

import random
import re

# ── Constants ─────────────────────────────────────────────────────────────────

MAX_NAME_LENGTH: int = 62
"""Longest `base + "-" + suffix` we ever emit. One under the DNS limit of 63."""

SUFFIX_ALPHABET: str = "bcdfghjklmnpqrstvwxz0123456789"

DEFAULT_PREFIX: str = "container-agent"
"""Used when the template name is empty."""

AGENT_SUFFIX_LENGTH: int = 5
DEPLOYMENT_SUFFIX_LENGTH: int = 8
VOLUME_SUFFIX_LENGTH: int = 3

DNS_LABEL_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")

_INVALID_CHARS = re.compile(r"[^a-z0-9-]")

_rng = random.SystemRandom()


def sanitize(name: str) -> str:
    """
    Normalise a free-form name into DNS label characters.

    Spaces and underscores become hyphens, everything is lowercased and any
    remaining character outside [a-z0-9-] is dropped. Leading hyphens are
    stripped so the result can always start a DNS label.
    """
    name = re.sub(r"[ _]", "-", name or "").lower()
    name = _INVALID_CHARS.sub("", name)
    return name.lstrip("-")


def random_suffix(length: int) -> str:
    return "".join(_rng.choice(SUFFIX_ALPHABET) for _ in range(length))


def generate_name(base_name: str, random_length: int = AGENT_SUFFIX_LENGTH) -> str:
    """
    Build `<base>-<suffix>` for a remote resource.

    Args:
        base_name:     Usually the template name. Empty → DEFAULT_PREFIX.
        random_length: Number of random suffix characters (≥ 1).

    Returns:
        A name of at most 62 characters matching DNS_LABEL_PATTERN whose last
        `random_length` characters are the generated suffix.

    Raises:
        ValueError: if random_length is outside [1, MAX_NAME_LENGTH].
    """
    if random_length < 1 or random_length > MAX_NAME_LENGTH:
        raise ValueError(
            f"random_length must be in [1, {MAX_NAME_LENGTH}], got {random_length}"
        )

    suffix = random_suffix(random_length)
    base = sanitize(base_name)
    if not base:
        base = DEFAULT_PREFIX

    # room for the '-' separator as well as the suffix
    base = base[: max(0, MAX_NAME_LENGTH - random_length - 1)].rstrip("-")
    if not base:
        return suffix
    return f"{base}-{suffix}"
