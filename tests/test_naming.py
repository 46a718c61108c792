#!/usr/bin/env python3
# CUI // SP-CTI
"""Tests for crport/translation/naming.py."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from crport.translation import naming


@pytest.mark.parametrize("go_name,expected", [
    ("parseHTTPHeader", "parse_http_header"),
    ("Add", "add"),
    ("userID", "user_id"),
    ("x", "x"),
    ("_", "_"),
])
def test_snake(go_name, expected):
    assert naming.snake(go_name) == expected


def test_method_name_escapes_reserved_words():
    assert naming.method_name("Puts") == "puts_"
    assert naming.method_name("end") == "end_"
    assert naming.method_name("Checksum") == "checksum"


def test_constant_name():
    assert naming.constant_name("maxSize") == "MAX_SIZE"
    assert naming.constant_name("NUL") == "NUL"


def test_type_name_keeps_last_segment():
    assert naming.type_name("big.Int") == "Int"
    assert naming.type_name("point") == "Point"


@pytest.mark.parametrize("package,expected", [
    ("mathx", "Mathx"),
    ("my_pkg", "MyPkg"),
    ("", "Main"),
])
def test_module_name(package, expected):
    assert naming.module_name(package) == expected


def test_file_stem():
    assert naming.file_stem("pkg/parseUtil.go") == "parse_util"
    assert naming.file_stem("main.go") == "main"
