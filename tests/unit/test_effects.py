"""Tests for effect classification."""

import pytest

from session_bridge.effects import EffectCatalog, classify, command_tag, normalize_command_token
from session_bridge.models import Effect


class TestNormalize:
    def test_strips_path_and_suffix(self):
        assert normalize_command_token("/usr/local/bin/Codex") == "codex"
        assert normalize_command_token(r"C:\Tools\claude.EXE") == "claude"

    def test_command_tag_uses_first_token(self):
        assert command_tag("  codex --model x  ") == "codex"
        assert command_tag("") is None
        assert command_tag("   ") is None
        assert command_tag(None) is None


class TestClassify:
    def test_path_prefix_matches_same_effect(self):
        plain = classify("codex", None)
        assert plain is not None
        assert classify("/usr/local/bin/codex --flag", None) == plain

    def test_unknown_command_is_none(self):
        assert classify("not-a-real-agent", None) is None

    def test_name_used_when_command_absent(self):
        assert classify(None, "claude").id == "claude"
        assert classify("", "claude").id == "claude"

    def test_only_first_token_counts(self):
        assert classify("echo codex", None) is None

    def test_is_pure(self):
        assert classify("claude -c", "x") == classify("claude -c", "x")


class TestCatalog:
    def test_first_match_wins(self):
        catalog = EffectCatalog([
            Effect(id="a", label="A", match_commands=("tool",)),
            Effect(id="b", label="B", match_commands=("tool",)),
        ])
        assert catalog.classify("tool").id == "a"

    def test_from_config_skips_invalid_entries(self, caplog):
        catalog = EffectCatalog.from_config({
            "effects": [
                {"id": "aider", "label": "Aider", "match_commands": ["Aider.exe"], "idle_after_ms": 500},
                {"label": "no id", "match_commands": ["x"]},
                {"id": "empty", "match_commands": []},
            ]
        })
        assert [e.id for e in catalog] == ["aider"]
        assert catalog.get("aider").idle_after_ms == 500
        assert catalog.classify("/opt/aider --yes").id == "aider"
        assert "Skipping invalid effect entry" in caplog.text

    def test_from_config_defaults_when_missing(self):
        catalog = EffectCatalog.from_config({})
        assert {e.id for e in catalog} == {"codex", "claude"}

    @pytest.mark.parametrize("effect_id", [None, "", "missing"])
    def test_get_unknown(self, effect_id):
        assert EffectCatalog().get(effect_id) is None
