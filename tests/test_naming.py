"""
tests/test_naming.py
────────────────────
Resource name generation.

Test groups:
    Group 1 — sanitize() (3 tests)
    Group 2 — generate_name() shape and bounds (7 tests)
"""

from __future__ import annotations

import pytest

from provisioner_core.naming import (
    DEFAULT_PREFIX,
    DNS_LABEL_PATTERN,
    MAX_NAME_LENGTH,
    SUFFIX_ALPHABET,
    generate_name,
    sanitize,
)


# ─────────────────────────────────────────────────────────────────────────────
# Group 1 — sanitize()
# ─────────────────────────────────────────────────────────────────────────────

class TestSanitize:

    def test_lowercases_and_replaces_separators(self):
        assert sanitize("My_Build Agent") == "my-build-agent"

    def test_drops_invalid_characters(self):
        assert sanitize("java@17!") == "java17"

    def test_strips_leading_hyphens(self):
        assert sanitize("--x") == "x"


# ─────────────────────────────────────────────────────────────────────────────
# Group 2 — generate_name()
# ─────────────────────────────────────────────────────────────────────────────

class TestGenerateName:

    def test_base_and_suffix(self):
        name = generate_name("java", 5)
        base, suffix = name.rsplit("-", 1)
        assert base == "java"
        assert len(suffix) == 5
        assert all(c in SUFFIX_ALPHABET for c in suffix)

    def test_empty_base_uses_default_prefix(self):
        assert generate_name("", 5).startswith(DEFAULT_PREFIX + "-")

    def test_long_base_is_truncated(self):
        name = generate_name("x" * 200, 8)
        assert len(name) <= MAX_NAME_LENGTH
        assert DNS_LABEL_PATTERN.match(name)

    def test_truncation_never_leaves_double_hyphen(self):
        # base is cut exactly on a hyphen
        base = "a" * 56 + "-bbbbbbbb"
        name = generate_name(base, 5)
        assert "--" not in name
        assert DNS_LABEL_PATTERN.match(name)

    def test_names_are_dns_labels(self):
        for base in ("Build Agent", "_weird_", "UPPER", "a.b.c", "---"):
            assert DNS_LABEL_PATTERN.match(generate_name(base, 5)), base

    def test_suffix_is_random(self):
        names = {generate_name("t", 8) for _ in range(50)}
        assert len(names) == 50

    @pytest.mark.parametrize("length", [0, -1, MAX_NAME_LENGTH + 1])
    def test_rejects_invalid_suffix_length(self, length):
        with pytest.raises(ValueError):
            generate_name("t", length)
