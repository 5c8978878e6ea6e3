"""
tests/test_template_registry.py
───────────────────────────────
Label expressions, template lookup and admission control.

Test groups:
    Group 1 — Label expressions (6 tests)
    Group 2 — TemplateRegistry lookup (5 tests)
    Group 3 — admit() (5 tests)
"""

from __future__ import annotations

import pytest

from conftest import make_template
from containeragents.control_plane.admission_controller import (
    AdmissionRejectedError,
    TemplateBackoffError,
    TemplateNotFoundError,
    admit,
)
from containeragents.control_plane.template_registry import (
    LabelExpressionError,
    TemplateRegistry,
    label_matches,
)
from provisioner_core.backoff import ProvisionRetryStrategy


@pytest.fixture
def registry() -> TemplateRegistry:
    return TemplateRegistry([
        make_template("linux-small", label="linux docker"),
        make_template("linux-gpu", label="linux gpu"),
        make_template("windows", label="windows"),
    ])


# ─────────────────────────────────────────────────────────────────────────────
# Group 1 — Label expressions
# ─────────────────────────────────────────────────────────────────────────────

class TestLabelExpressions:

    def test_single_atom(self):
        assert label_matches("linux", {"linux", "docker"})
        assert not label_matches("windows", {"linux"})

    def test_and_or(self):
        assert label_matches("linux && docker", {"linux", "docker"})
        assert not label_matches("linux && gpu", {"linux", "docker"})
        assert label_matches("windows || docker", {"linux", "docker"})

    def test_not_and_parentheses(self):
        assert label_matches("(linux || windows) && !gpu", {"linux"})
        assert not label_matches("(linux || windows) && !gpu", {"linux", "gpu"})

    def test_blank_matches_everything(self):
        assert label_matches(None, set())
        assert label_matches("   ", {"x"})

    def test_unbalanced_parenthesis(self):
        with pytest.raises(LabelExpressionError):
            label_matches("(linux", {"linux"})

    def test_dangling_operator(self):
        with pytest.raises(LabelExpressionError):
            label_matches("linux &&", {"linux"})


# ─────────────────────────────────────────────────────────────────────────────
# Group 2 — Lookup
# ─────────────────────────────────────────────────────────────────────────────

class TestRegistry:

    def test_first_match_in_configured_order(self, registry):
        assert registry.find_template("linux").name == "linux-small"
        assert registry.find_template("gpu").name == "linux-gpu"

    def test_no_label_picks_first_template(self, registry):
        assert registry.find_template(None).name == "linux-small"
        assert registry.find_template("").name == "linux-small"

    def test_no_match_returns_none(self, registry):
        assert registry.find_template("macos") is None

    def test_empty_registry(self):
        assert TemplateRegistry([]).find_template() is None

    def test_duplicate_names_rejected(self):
        with pytest.raises(ValueError):
            TemplateRegistry([make_template("a"), make_template("a")])


# ─────────────────────────────────────────────────────────────────────────────
# Group 3 — admit()
# ─────────────────────────────────────────────────────────────────────────────

class TestAdmit:

    def test_admits_matching_template(self, registry, clock):
        breaker = ProvisionRetryStrategy(clock=clock)
        assert admit("c", registry, breaker, "windows").name == "windows"

    def test_unknown_label(self, registry, clock):
        with pytest.raises(TemplateNotFoundError):
            admit("c", registry, ProvisionRetryStrategy(clock=clock), "macos")

    def test_malformed_label_is_rejected(self, registry, clock):
        with pytest.raises(AdmissionRejectedError):
            admit("c", registry, ProvisionRetryStrategy(clock=clock), "linux &&")

    def test_zero_count_is_rejected(self, registry, clock):
        with pytest.raises(AdmissionRejectedError):
            admit("c", registry, ProvisionRetryStrategy(clock=clock), "linux", count=0)

    def test_template_in_backoff(self, registry, clock):
        breaker = ProvisionRetryStrategy(clock=clock)
        breaker.failure("linux-small")
        with pytest.raises(TemplateBackoffError) as exc:
            admit("c", registry, breaker, "linux")
        assert exc.value.template_name == "linux-small"
        assert exc.value.retry_at == clock.now() + 5.0
        # another template of the same cloud is unaffected
        assert admit("c", registry, breaker, "gpu").name == "linux-gpu"
