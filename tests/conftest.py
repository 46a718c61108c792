#!/usr/bin/env python3
# CUI // SP-CTI
"""Shared pytest fixtures for the crport test suite.

Project-root conftest.py puts the repo on sys.path and provides small Go
packages, the shipped rule table and a canned Crystal runner so tests never
need a Crystal toolchain.
"""

import sys
from pathlib import Path

import pytest

# Ensure project root is on sys.path
BASE_DIR = Path(__file__).resolve().parent.parent
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

from crport.translation.equivalence_verifier import RunOutcome  # noqa: E402
from crport.translation.rule_table import load_rule_table  # noqa: E402


# ---------------------------------------------------------------------------
# Go source fixtures
# ---------------------------------------------------------------------------
MATHX_SOURCE = """\
package mathx

// NUL is the zero byte.
const NUL uint8 = 0x00

// Add returns the sum of a and b.
func Add(a, b int) int {
	return a + b
}

func Checksum(data []byte) uint8 {
	var sum uint8
	for _, b := range data {
		sum += b
	}
	return sum
}
"""

MATHX_TEST_SOURCE = """\
package mathx

import "testing"

func TestAdd(t *testing.T) {
	if got := Add(2, 3); got != 5 {
		t.Errorf("Add(2, 3) = %d, want 5", got)
	}
}

func TestAddTable(t *testing.T) {
	cases := []struct {
		name string
		a, b int
		want int
	}{
		{"small", 1, 2, 3},
		{"negative", -4, 1, -3},
	}
	for _, tc := range cases {
		t.Run(tc.name, func(t *testing.T) {
			if got := Add(tc.a, tc.b); got != tc.want {
				t.Fatalf("got %d", got)
			}
		})
	}
}
"""


@pytest.fixture(scope="session")
def rule_table():
    """The shipped Go -> Crystal rule table (loaded once)."""
    return load_rule_table()


@pytest.fixture
def go_package(tmp_path):
    """Write a small Go package (source plus test file) and return its dir."""
    pkg = tmp_path / "mathx"
    pkg.mkdir()
    (pkg / "mathx.go").write_text(MATHX_SOURCE, encoding="utf-8")
    (pkg / "mathx_test.go").write_text(MATHX_TEST_SOURCE, encoding="utf-8")
    return pkg


class FakeRunner:
    """Stand-in for CrystalRunner returning canned output per case id.

    ``outputs`` maps a case id to a RunOutcome or a stdout string
    (returncode 0); unknown cases get ``default``.
    """

    def __init__(self, outputs=None, default="CRPORT:MATCH\n"):
        self.outputs = dict(outputs or {})
        self.default = default
        self.calls = []

    def run(self, files, entry, timeout):
        header = files[entry].splitlines()[1]
        case_id = header.split("harness: ", 1)[1].split(" (", 1)[0]
        self.calls.append({"case_id": case_id, "files": dict(files), "entry": entry,
                           "timeout": timeout})
        item = self.outputs.get(case_id, self.default)
        if isinstance(item, RunOutcome):
            return item
        return RunOutcome(returncode=0, stdout=item, stderr="", timed_out=False)


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def make_runner():
    """Factory for FakeRunner with per-case outputs."""
    return FakeRunner
