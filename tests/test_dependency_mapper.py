#!/usr/bin/env python3
# CUI // SP-CTI
"""Tests for crport/translation/dependency_mapper.py."""

import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from crport.translation.dependency_mapper import (
    PRELUDE,
    SKIPPED,
    TABLE,
    UNMAPPED,
    get_all_domains,
    get_coverage,
    load_mappings,
    main,
    requires_for,
    resolve_import,
)


@pytest.fixture(scope="module")
def mappings():
    return load_mappings()


def test_prelude_package_needs_no_require(mappings):
    result = resolve_import("fmt", mappings)
    assert result["mapping_source"] == PRELUDE
    assert result["target_require"] == ""


def test_table_package_maps_to_require(mappings):
    result = resolve_import("math/big", mappings)
    assert result["mapping_source"] == TABLE
    assert result["target_require"] == "big"
    assert result["domain"] == "big_numbers"


def test_testing_import_is_skipped(mappings):
    assert resolve_import("testing", mappings)["mapping_source"] == SKIPPED


def test_unknown_import_is_unmapped(mappings):
    result = resolve_import("github.com/acme/widgets", mappings)
    assert result["mapping_source"] == UNMAPPED
    assert result["target_require"] is None


def test_requires_for_dedupes_and_sorts(mappings):
    requires, unmapped = requires_for(
        ["encoding/json", "fmt", "math/big", "encoding/json", "example.com/x"], mappings)
    assert requires == ("big", "json")
    assert unmapped == ("example.com/x",)


def test_coverage(mappings):
    cov = get_coverage(["fmt", "strings", "example.com/x", "math/big"], mappings)
    assert cov["total_imports"] == 4
    assert cov["covered_imports"] == 3
    assert cov["coverage_pct"] == 75.0


def test_domains_listed(mappings):
    assert "json" in get_all_domains(mappings)


def test_missing_mappings_file_gives_empty(tmp_path):
    assert load_mappings(tmp_path / "none.json") == {}


def test_cli_coverage_json(capsys):
    main(["--imports", "fmt,strings,example.com/x,math/big", "--coverage", "--json"])
    data = json.loads(capsys.readouterr().out)
    assert data == {"total_imports": 4, "covered_imports": 3, "coverage_pct": 75.0}


def test_cli_coverage_text(capsys):
    main(["--imports", "fmt,example.com/x", "--coverage"])
    assert "[INFO] Coverage: 1/2 imports (50.0%)" in capsys.readouterr().out
