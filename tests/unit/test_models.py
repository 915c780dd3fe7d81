"""Unit tests for the rule set data model."""

from __future__ import annotations

import json

import pytest


class TestScriptletInvocation:
    """Tests for scriptlet invocation parsing."""

    def test_from_object(self) -> None:
        """Test building an invocation from a plain object."""
        from webshield.models import ScriptletInvocation

        inv = ScriptletInvocation.from_raw({"name": "set-constant", "args": ["a.b", 1]})
        assert inv.name == "set-constant"
        assert inv.args == ("a.b", "1")

    def test_from_json_string(self) -> None:
        """Test that JSON-encoded entries are decoded first."""
        from webshield.models import ScriptletInvocation

        inv = ScriptletInvocation.from_raw(json.dumps({"name": "nowebrtc"}))
        assert inv.name == "nowebrtc"
        assert inv.args == ()

    def test_missing_name_rejected(self) -> None:
        """Test that entries without a name are rejected."""
        from webshield.models import ScriptletInvocation

        with pytest.raises(ValueError):
            ScriptletInvocation.from_raw({"args": ["x"]})

    def test_non_list_args_rejected(self) -> None:
        """Test that args must be a list."""
        from webshield.models import ScriptletInvocation

        with pytest.raises(ValueError):
            ScriptletInvocation.from_raw({"name": "x", "args": "oops"})


class TestRuleSet:
    """Tests for RuleSet packaging."""

    def test_from_payload_defaults_missing_categories(self) -> None:
        """Test that absent categories become empty."""
        from webshield.models import RuleSet, RuleSource

        rule_set = RuleSet.from_payload({"cssInject": [".ad { display: none; }"]})
        assert rule_set.css_inject == (".ad { display: none; }",)
        assert rule_set.css_extended == ()
        assert rule_set.scripts == ()
        assert rule_set.scriptlets == ()
        assert rule_set.source is RuleSource.FRESH_FETCH
        assert rule_set.rule_count == 1

    def test_from_payload_drops_bad_entries(self) -> None:
        """Test that wrongly typed entries are dropped, not fatal."""
        from webshield.models import RuleSet

        rule_set = RuleSet.from_payload(
            {
                "cssInject": ["a {}", 3, None],
                "scripts": "not a list",
                "scriptlets": [{"name": "ok"}, {"bogus": True}, "{not json"],
            }
        )
        assert rule_set.css_inject == ("a {}",)
        assert rule_set.scripts == ()
        assert [s.name for s in rule_set.scriptlets] == ["ok"]

    def test_from_payload_rejects_non_object(self) -> None:
        """Test that a non-object payload is malformed."""
        from webshield.exceptions import MalformedResponseError
        from webshield.models import RuleSet

        with pytest.raises(MalformedResponseError):
            RuleSet.from_payload(["cssInject"])

    def test_wire_shape_keeps_source_and_timestamp(self) -> None:
        """Test that to_dict/from_dict preserve source and timestamp."""
        from webshield.models import RuleSet, RuleSource, ScriptletInvocation

        original = RuleSet(
            css_inject=("a {}",),
            scriptlets=(ScriptletInvocation("remove-attr", ("onclick",)),),
            timestamp=1234.5,
            source=RuleSource.PINNED_CACHE,
        )
        rebuilt = RuleSet.from_dict(original.to_dict())
        assert rebuilt == original

    def test_from_dict_unknown_source(self) -> None:
        """Test that an unknown source falls back to fresh-fetch."""
        from webshield.models import RuleSet, RuleSource

        rule_set = RuleSet.from_dict({"source": "somewhere"})
        assert rule_set.source is RuleSource.FRESH_FETCH

    def test_empty(self) -> None:
        """Test the empty rule set."""
        from webshield.models import RuleSet, RuleSource

        rule_set = RuleSet.empty()
        assert rule_set.is_empty()
        assert rule_set.source is RuleSource.SKIPPED


class TestGetHostname:
    """Tests for hostname extraction."""

    @pytest.mark.parametrize(
        "url, expected",
        [
            ("https://www.example.com/path?q=1", "www.example.com"),
            ("http://Example.COM:8080/", "example.com"),
            ("example.com", "example.com"),
            ("http://localhost:3000/", "localhost"),
            ("http://127.0.0.1/", "127.0.0.1"),
            ("about:blank", None),
            ("chrome://settings", None),
            ("https://intranet/", None),
            ("", None),
            ("   ", None),
        ],
    )
    def test_hostnames(self, url: str, expected: str | None) -> None:
        """Test hostname extraction across URL shapes."""
        from webshield.models import get_hostname

        assert get_hostname(url) == expected
