#!/usr/bin/env python3
# CUI // SP-CTI
"""Tests for crport/translation/config.py and crport/translation/errors.py."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from crport.translation.config import DEFAULT_CONFIG, BASE_DIR, load_config, resolve_path
from crport.translation.errors import (
    AmbiguousMappingError,
    ConfigurationError,
    CrportError,
    ParseError,
    RuleTableError,
    TemplateRenderError,
)


# ---------------------------------------------------------------------------
# Config loading
# ---------------------------------------------------------------------------

class TestLoadConfig:
    def test_shipped_config_has_every_section(self):
        config = load_config()
        for section in DEFAULT_CONFIG:
            assert section in config
        assert config["languages"] == {"source": "go", "target": "crystal"}

    def test_partial_yaml_is_deep_merged(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("verification:\n  timeout_seconds: 5\n", encoding="utf-8")
        config = load_config(path)
        assert config["verification"]["timeout_seconds"] == 5
        assert config["verification"]["max_workers"] == DEFAULT_CONFIG["verification"]["max_workers"]
        assert config["batch"] == DEFAULT_CONFIG["batch"]

    def test_defaults_are_not_mutated(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("extraction:\n  exclude_dirs: [gen]\n", encoding="utf-8")
        load_config(path)
        assert "vendor" in DEFAULT_CONFIG["extraction"]["exclude_dirs"]

    def test_explicit_missing_path_raises(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(tmp_path / "nope.yaml")

    def test_non_mapping_root_raises(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_shipped_data_lives_inside_the_package(self):
        import crport

        package_dir = Path(crport.__file__).resolve().parent
        assert BASE_DIR == package_dir
        config = load_config()
        for key in ("table_path", "dependency_mappings_path"):
            path = resolve_path(config["rules"][key])
            assert path.is_file()
            assert package_dir in path.parents

    def test_resolve_path(self, tmp_path):
        assert resolve_path("args/x.yaml") == BASE_DIR / "args" / "x.yaml"
        assert resolve_path(str(tmp_path)) == tmp_path


# ---------------------------------------------------------------------------
# Error hierarchy
# ---------------------------------------------------------------------------

class TestErrors:
    @pytest.mark.parametrize("exc", [
        ParseError("a.go:1", "expected '}'"),
        TemplateRenderError("boom", rule_id="E-X"),
        RuleTableError("bad", rule_id="T-X"),
        ConfigurationError("missing", config_key="path"),
    ])
    def test_all_derive_from_crport_error_and_are_not_retryable(self, exc):
        assert isinstance(exc, CrportError)
        assert exc.retryable is False

    def test_parse_error_message_prefixes_location(self):
        err = ParseError("pkg/a.go:7", "expected ')'")
        assert str(err) == "pkg/a.go:7: expected ')'"
        assert err.reason == "expected ')'"

    def test_ambiguous_mapping_error_names_rules(self):
        from crport.schemas.pipeline import MappingRule
        from crport.translation.construct_model import (
            UINT8, Confidence, ConstructKind, SourceLocation, make_node,
        )
        node = make_node(ConstructKind.CONSTANT, "NUL", UINT8, SourceLocation("a.go", 4))
        rules = [MappingRule(rid, "constant", "*", "x", Confidence.EXACT) for rid in ("C-A", "C-B")]
        err = AmbiguousMappingError(node, "uint8", rules)
        assert "C-A, C-B" in str(err)
        assert "a.go:4" in str(err)
        assert err.candidates == tuple(rules)
