#!/usr/bin/env python3
# CUI // SP-CTI
"""Code Emitter: MappedUnit -> Crystal source file.

Wraps the rendered construct texts in ``module <Package>`` (with
``extend self``) under a CUI marking, provenance header and the
``require`` lines resolved by the dependency mapper. Emission order:
interfaces, then the remaining type declarations, then every other
construct in source order. Consecutive methods of one struct/class
receiver share a reopened ``struct``/``class`` block.

The emitter never re-decides a mapping: it only places text and records
where each construct landed (target line ranges) plus the source -> target
names of implemented functions for the verifier.

Usage:
    python -m crport.translation.code_emitter --source-path ./calc --output-dir ./out
    python -m crport.translation.code_emitter --source-path calc.go --json
"""

import argparse
import json
import logging
import os
import sys
import tempfile
import textwrap
from functools import lru_cache
from pathlib import Path
from typing import List, Optional, Tuple

import jinja2

from crport.schemas.pipeline import EmittedUnit, MappedUnit
from crport.translation import naming
from crport.translation.config import load_config
from crport.translation.construct_model import ConstructKind
from crport.translation.errors import CrportError, TemplateRenderError
from crport.translation.mapping_engine import crystal_string_literal

logger = logging.getLogger("crport.translation.code_emitter")

CUI_HEADER = "# CUI // SP-CTI"
TARGET_SUFFIX = ".cr"

# Receiver forms whose methods live inside the reopened type
_TYPE_RECEIVERS = {"struct": "struct", "class": "class"}

HEADER_TEMPLATE = """\
{% if cui %}
{{ cui }}
{% endif %}
{% if provenance %}
# Translated from {{ source_path }} (Go package {{ package }}) by crport.
{% if source_hash %}
# Source SHA-256: {{ source_hash }}
{% endif %}
# Regenerate from the Go source instead of editing this file.
{% endif %}
{% for imp in unmapped %}
# UNMAPPED IMPORT: {{ imp }}
{% endfor %}
{% if requires %}

{% for r in requires %}
require {{ r | crystal_string }}
{% endfor %}
{% endif %}

module {{ module }}
{{ indent }}extend self
"""


@lru_cache(maxsize=1)
def _header_template() -> jinja2.Template:
    env = jinja2.Environment(
        loader=jinja2.BaseLoader(),
        undefined=jinja2.StrictUndefined,
        keep_trailing_newline=True,
        trim_blocks=True,
        lstrip_blocks=True,
    )
    env.filters["crystal_string"] = crystal_string_literal
    return env.from_string(HEADER_TEMPLATE)


def _indent(text: str, prefix: str) -> List[str]:
    return [(prefix + line) if line else "" for line in text.split("\n")]


def target_path_for(source_path: str, output_dir=None) -> str:
    """``pkg/string_utils.go`` -> ``<output_dir>/pkg/string_utils.cr``."""
    source = Path(source_path)
    name = naming.file_stem(source.name) + TARGET_SUFFIX
    if output_dir is None:
        return str(source.with_name(name))
    parent = source.parent
    if parent.is_absolute():
        parent = Path(parent.name)
    return str(Path(output_dir) / parent / name)


def _sections(constructs) -> Tuple[list, list, list]:
    interfaces, types, rest = [], [], []
    for mc in constructs:
        if mc.node.kind == ConstructKind.TYPE_DECL:
            (interfaces if mc.node.form == "interface" else types).append(mc)
        else:
            rest.append(mc)
    return interfaces, types, rest


def _reopen_header(node) -> Optional[str]:
    """``struct Point`` / ``class Stack(T)`` for a struct or class method, else None."""
    if node.kind != ConstructKind.FUNCTION or not node.attr("receiver_type"):
        return None
    keyword = _TYPE_RECEIVERS.get(node.attr("receiver_form", ""))
    if keyword is None:
        return None
    name = naming.type_name(node.attr("receiver_type"))
    args = node.attr("receiver_args") or []
    if args:
        name += "(" + ", ".join(args) + ")"
    return f"{keyword} {name}"


def _blocks(constructs):
    """Group constructs into (reopen header or None, [constructs]) blocks."""
    blocks = []
    for mc in constructs:
        header = _reopen_header(mc.node)
        if header is not None and blocks and blocks[-1][0] == header:
            blocks[-1][1].append(mc)
        else:
            blocks.append((header, [mc]))
    return blocks


def _compact(mc) -> bool:
    """Single-line constants and variables are emitted without blank lines between them."""
    return (mc.node.kind in (ConstructKind.CONSTANT, ConstructKind.STATEMENT)
            and "\n" not in mc.text and not mc.node.doc)


def emit(mapped_unit: MappedUnit, source_hash: str = "", config=None,
         output_dir=None) -> EmittedUnit:
    """Render ``mapped_unit`` as one Crystal file.

    Raises:
        TemplateRenderError: the file skeleton failed to render.
    """
    config = config or load_config()
    emitter_cfg = config.get("emitter", {})
    indent = " " * int(emitter_cfg.get("indent", 2))

    try:
        header = _header_template().render(
            cui=CUI_HEADER if emitter_cfg.get("cui_marking", True) else "",
            provenance=emitter_cfg.get("provenance_comment", True),
            source_path=Path(mapped_unit.path).as_posix(),
            package=mapped_unit.package,
            source_hash=source_hash,
            unmapped=list(mapped_unit.unmapped_imports),
            requires=list(mapped_unit.requires),
            module=mapped_unit.module,
            indent=indent,
        )
    except jinja2.TemplateError as exc:
        raise TemplateRenderError(f"File skeleton for {mapped_unit.path}: {exc}") from exc

    lines = header.rstrip("\n").split("\n")
    locations = []
    functions = []
    previous_compact = False

    interfaces, types, rest = _sections(mapped_unit.constructs)
    for header_line, members in _blocks(interfaces + types + rest):
        compact = header_line is None and len(members) == 1 and _compact(members[0])
        if not (compact and previous_compact):
            lines.append("")
        previous_compact = compact

        prefix = indent
        if header_line is not None:
            lines.append(indent + header_line)
            prefix = indent * 2
        for i, mc in enumerate(members):
            if i:
                lines.append("")
            start = len(lines) + 1
            lines.extend(_indent(mc.text, prefix))
            locations.append((mc.node.node_id, start, len(lines)))
            node = mc.node
            if (node.kind == ConstructKind.FUNCTION and mc.implemented
                    and not node.attr("receiver_type")):
                functions.append((node.name, mc.target_name))
        if header_line is not None:
            lines.append(indent + "end")

    lines.append("end")
    text = "\n".join(lines) + "\n"
    logger.info("Emitted %s: %d constructs, %d lines", mapped_unit.path,
                len(mapped_unit.constructs), len(lines))
    return EmittedUnit(
        source_path=mapped_unit.path,
        target_path=target_path_for(mapped_unit.path, output_dir),
        module=mapped_unit.module,
        text=text,
        locations=tuple(locations),
        functions=tuple(functions),
    )


def write_atomic(path, text: str) -> Path:
    """Write ``text`` to ``path`` all-or-nothing (temp file in the same dir + rename)."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp",
                                    dir=str(target.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise
    logger.debug("Wrote %s (%d bytes)", target, len(text.encode("utf-8")))
    return target


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
def main():
    from crport.translation.mapping_engine import group_by_package, map_unit
    from crport.translation.rule_table import load_rule_table
    from crport.translation.source_extractor import extract_source

    parser = argparse.ArgumentParser(
        description="crport Code Emitter: Go source -> Crystal files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            Examples:
              python -m crport.translation.code_emitter --source-path ./calc --output-dir ./out
              python -m crport.translation.code_emitter --source-path calc.go
        """),
    )
    parser.add_argument("--source-path", required=True, help="Go file or directory")
    parser.add_argument("--output-dir", help="Write .cr files here (default: print)")
    parser.add_argument("--rules", help="Rule table YAML (default: from config)")
    parser.add_argument("--non-strict", action="store_true",
                        help="Record ambiguous mappings instead of failing")
    parser.add_argument("--json", action="store_true", dest="json_output", help="JSON output")
    args = parser.parse_args()

    try:
        table = load_rule_table(args.rules)
        extraction = extract_source(args.source_path)
    except CrportError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        sys.exit(1)

    emitted = []
    failures = [{"path": e["file"], "error": f"{e['location']}: {e['reason']}"}
                for e in extraction["errors"]]
    for _, units in sorted(group_by_package(extraction["units"]).items()):
        for unit in units:
            try:
                mapped = map_unit(unit, table, strict=not args.non_strict, package_units=units)
                result = emit(mapped, source_hash=unit.source_hash, output_dir=args.output_dir)
            except CrportError as exc:
                failures.append({"path": unit.path, "error": str(exc)})
                continue
            if args.output_dir:
                write_atomic(result.target_path, result.text)
            emitted.append(result)

    if args.json_output:
        print(json.dumps({
            "emitted": [{"source_path": e.source_path, "target_path": e.target_path,
                         "module": e.module, "lines": e.text.count("\n"),
                         "functions": e.function_map()} for e in emitted],
            "failures": failures,
        }, indent=2))
    else:
        for e in emitted:
            if args.output_dir:
                print(f"[INFO] {e.source_path} -> {e.target_path}")
            else:
                print(e.text)
        for f in failures:
            print(f"[ERROR] {f['path']}: {f['error']}", file=sys.stderr)
    sys.exit(1 if failures else 0)


if __name__ == "__main__":
    main()
