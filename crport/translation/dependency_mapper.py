#!/usr/bin/env python3
# CUI // SP-CTI
"""Dependency Mapper: Go import paths to Crystal requires.

Maps Go packages to Crystal equivalents from a declarative JSON table
(crport/context/translation/dependency_mappings.json). An empty Crystal entry
means the functionality lives in Crystal's prelude and needs no require.
Add new mappings without code changes.

Usage:
    python -m crport.translation.dependency_mapper --imports "fmt,encoding/json" --json
    python -m crport.translation.dependency_mapper --imports "fmt,example.com/x" --coverage
"""

import argparse
import json
import logging
import sys
import textwrap
from pathlib import Path

from crport.translation.config import BASE_DIR, load_config, resolve_path

logger = logging.getLogger("crport.translation.dependency_mapper")

MAPPINGS_PATH = BASE_DIR / "context" / "translation" / "dependency_mappings.json"

# Resolution sources
TABLE = "table"
PRELUDE = "prelude"
SKIPPED = "skipped"
UNMAPPED = "unmapped"

# Imports that only test files use; never required by emitted code
TEST_ONLY_IMPORTS = frozenset({"testing"})


def load_mappings(path=None, config=None):
    """Load dependency mappings from JSON (path, else config, else default)."""
    if path is None:
        config = config or load_config()
        configured = config.get("rules", {}).get("dependency_mappings_path")
        path = resolve_path(configured) if configured else MAPPINGS_PATH
    mappings_path = Path(path)
    if not mappings_path.exists():
        logger.warning("Dependency mappings not found: %s", mappings_path)
        return {}
    with open(mappings_path, encoding="utf-8") as f:
        return json.load(f)


def resolve_import(import_path, mappings=None):
    """Resolve a single Go import path to its Crystal require.

    Returns dict with:
        source_import, target_require, mapping_source, domain, notes

    ``target_require`` is "" for prelude functionality and None when no
    mapping is known.
    """
    if mappings is None:
        mappings = load_mappings()

    result = {
        "source_import": import_path,
        "target_require": None,
        "mapping_source": UNMAPPED,
        "domain": None,
        "notes": "",
    }

    for domain_name, domain_data in mappings.get("domains", {}).items():
        packages = domain_data.get("packages", {})
        source_packages = packages.get("go", [])
        if isinstance(source_packages, str):
            source_packages = [source_packages]
        if import_path not in source_packages:
            continue
        targets = packages.get("crystal", [])
        if isinstance(targets, str):
            targets = [targets]
        if not targets:
            continue
        target = targets[0]
        result["domain"] = domain_name
        result["notes"] = domain_data.get("notes", "")
        if import_path in TEST_ONLY_IMPORTS:
            result["mapping_source"] = SKIPPED
            result["target_require"] = ""
        else:
            result["mapping_source"] = TABLE if target else PRELUDE
            result["target_require"] = target
        return result

    logger.debug("No Crystal mapping for Go import %s", import_path)
    return result


def resolve_imports(import_list, mappings=None):
    """Resolve a list of imports. Returns list of resolution dicts."""
    if mappings is None:
        mappings = load_mappings()
    return [
        resolve_import(imp.strip(), mappings)
        for imp in import_list
        if imp and imp.strip()
    ]


def requires_for(import_list, mappings=None):
    """(sorted unique require names, unmapped import paths) for a file's imports."""
    resolutions = resolve_imports(import_list, mappings)
    requires = sorted({r["target_require"] for r in resolutions
                       if r["mapping_source"] == TABLE and r["target_require"]})
    unmapped = [r["source_import"] for r in resolutions if r["mapping_source"] == UNMAPPED]
    return tuple(requires), tuple(unmapped)


def get_all_domains(mappings=None):
    """List all dependency domains available in the mapping table."""
    if mappings is None:
        mappings = load_mappings()
    return list(mappings.get("domains", {}).keys())


def get_coverage(import_list, mappings=None):
    """Share of ``import_list`` with a known Crystal equivalent."""
    resolutions = resolve_imports(import_list, mappings)
    total = len(resolutions)
    covered = sum(1 for r in resolutions if r["mapping_source"] != UNMAPPED)
    return {
        "total_imports": total,
        "covered_imports": covered,
        "coverage_pct": round((covered / total * 100) if total > 0 else 0, 1),
    }


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
def main(argv=None):
    parser = argparse.ArgumentParser(
        description="crport Dependency Mapper: Go imports -> Crystal requires",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            Examples:
              python -m crport.translation.dependency_mapper \\
                --imports "fmt,strings,encoding/json" --json

              python -m crport.translation.dependency_mapper --list-domains

              python -m crport.translation.dependency_mapper \\
                --imports "fmt,example.com/x" --coverage
        """),
    )
    parser.add_argument("--imports", help="Comma-separated list of Go import paths")
    parser.add_argument("--mappings", help="Mappings JSON (default: from config)")
    parser.add_argument("--list-domains", action="store_true", help="List all mapping domains")
    parser.add_argument("--coverage", action="store_true",
                        help="Report the share of --imports with a Crystal equivalent")
    parser.add_argument("--json", action="store_true", dest="json_output", help="JSON output")
    args = parser.parse_args(argv)

    mappings = load_mappings(args.mappings)

    if args.list_domains:
        domains = get_all_domains(mappings)
        if args.json_output:
            print(json.dumps({"domains": domains, "count": len(domains)}, indent=2))
        else:
            print(f"Dependency mapping domains ({len(domains)}):")
            for d in domains:
                print(f"  - {d}")
        return

    if not args.imports:
        parser.print_help()
        sys.exit(1)

    import_list = [i.strip() for i in args.imports.split(",")]
    if args.coverage:
        coverage = get_coverage(import_list, mappings)
        if args.json_output:
            print(json.dumps(coverage, indent=2))
        else:
            print(f"[INFO] Coverage: {coverage['covered_imports']}/{coverage['total_imports']} "
                  f"imports ({coverage['coverage_pct']}%)")
        return

    results = resolve_imports(import_list, mappings)
    unmapped = [r for r in results if r["mapping_source"] == UNMAPPED]

    if args.json_output:
        print(json.dumps({
            "resolutions": results,
            "summary": {
                "total": len(results),
                "mapped": len(results) - len(unmapped),
                "unmapped": len(unmapped),
            },
        }, indent=2))
    else:
        print(f"Resolved {len(results) - len(unmapped)}/{len(results)} imports:")
        for r in results:
            source = r["mapping_source"]
            if source == UNMAPPED:
                print(f"  [UNMAPPED] {r['source_import']}")
            elif source == TABLE:
                print(f"  [OK] {r['source_import']} -> require \"{r['target_require']}\"")
            else:
                print(f"  [OK] {r['source_import']} -> ({source})")
    sys.exit(1 if unmapped else 0)


if __name__ == "__main__":
    main()
