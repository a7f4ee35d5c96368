#!/usr/bin/env python3
"""Offline section extractor for xclbin (AXLF) containers.

Lists the section-header table, writes raw section payloads plus a
metadata.json describing them, and emits the SYSTEM_METADATA payload as the
hex string that run-summary reports embed.
"""

from __future__ import annotations

import argparse
import datetime as _dt
import hashlib
import json
import logging
import shutil
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import axlf_container as ax
from axlf_container import SectionHeader, SectionKind, XclbinError

logger = logging.getLogger(__name__)


def _sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _iso_utc_now() -> str:
    return _dt.datetime.now(tz=_dt.timezone.utc).replace(microsecond=0).isoformat()


def _parse_kind(text: str) -> int:
    try:
        return int(SectionKind[text.upper()])
    except KeyError:
        pass
    try:
        return int(text, 0)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"unknown section kind '{text}'") from exc


def _read_container(input_path: Path) -> bytes:
    if not input_path.exists():
        raise XclbinError(f"input file not found: {input_path}")
    if not input_path.is_file():
        raise XclbinError(f"input path is not a file: {input_path}")
    return input_path.read_bytes()


def _safe_prepare_output_dir(out_dir: Path, overwrite: bool) -> None:
    if out_dir.exists() and overwrite:
        resolved = out_dir.resolve()
        if resolved == Path("/"):
            raise XclbinError("refusing to remove root directory")
        shutil.rmtree(out_dir)

    if not out_dir.exists():
        out_dir.mkdir(parents=True, exist_ok=True)

    if any(out_dir.iterdir()):
        raise XclbinError(
            f"output directory '{out_dir}' is not empty (use --overwrite to replace it)"
        )


def _section_entry(section: SectionHeader) -> Dict[str, Any]:
    return {
        "index": section.index,
        "kind": int(section.kind),
        "kind_name": section.kind_name,
        "name": section.name,
        "offset": section.offset,
        "size": section.size,
    }


def list_sections(input_path: Path) -> Dict[str, Any]:
    blob = _read_container(input_path)
    header = ax.parse_header(blob)
    sections = ax.read_section_headers(blob)
    return {
        "path": str(input_path),
        "size": len(blob),
        "uuid": str(header.uuid),
        "platform_vbnv": header.platform_vbnv,
        "version": header.version,
        "sections": [_section_entry(s) for s in sections],
    }


def extract_file(
    input_path: Path,
    out_dir: Path,
    kinds: Optional[List[int]] = None,
    overwrite: bool = False,
    include_hex: bool = False,
) -> Dict[str, Any]:
    blob = _read_container(input_path)
    header = ax.parse_header(blob)
    sections = ax.read_section_headers(blob)
    if kinds:
        wanted = set(kinds)
        sections = [s for s in sections if int(s.kind) in wanted]
        if not sections:
            names = ", ".join(ax.section_kind_name(k) for k in kinds)
            raise XclbinError(f"no sections of kind {names} in {input_path}")

    _safe_prepare_output_dir(out_dir, overwrite=overwrite)

    entries: List[Dict[str, Any]] = []
    for section in sections:
        payload = bytes(ax.section_payload(blob, section))
        out_path = out_dir / f"section_{section.index:03d}_{section.kind_name.lower()}.bin"
        out_path.write_bytes(payload)
        logger.debug("wrote %s (%d bytes)", out_path, len(payload))

        entry = _section_entry(section)
        entry["sha256"] = _sha256_bytes(payload)
        entry["path"] = str(out_path.relative_to(out_dir))
        if include_hex:
            entry["payload_hex"] = ax.to_hex(payload)
        entries.append(entry)

    metadata = {
        "tool": "extract_xclbin_sections.py",
        "generated_at_utc": _iso_utc_now(),
        "input": {
            "path": str(input_path),
            "size": len(blob),
            "sha256": _sha256_bytes(blob),
        },
        "header": {
            "uuid": str(header.uuid),
            "unique_id": header.unique_id,
            "platform_vbnv": header.platform_vbnv,
            "version": header.version,
            "timestamp": header.timestamp,
            "num_sections": header.num_sections,
        },
        "sections": entries,
    }

    metadata_path = out_dir / "metadata.json"
    metadata_path.write_text(json.dumps(metadata, indent=2, sort_keys=False) + "\n", encoding="utf-8")

    return {
        "metadata_path": metadata_path,
        "section_count": len(entries),
        "sections": entries,
    }


def system_diagram(input_path: Path) -> Dict[str, Any]:
    """Run-summary fragment carrying the SYSTEM_METADATA payload; empty when absent."""
    payload = ax.system_metadata_hex(_read_container(input_path))
    if not payload:
        return {}
    return {"system_diagram": {"payload_16bitEnc": payload}}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="extract_xclbin_sections.py",
        description="List and extract raw sections of xclbin (AXLF) containers.",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="log debug events")

    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="print the section-header table")
    list_parser.add_argument("input", type=Path, help="input .xclbin path")
    list_parser.add_argument("--json", action="store_true", help="emit JSON instead of text")

    extract_parser = subparsers.add_parser(
        "extract",
        help="write section payloads and metadata.json",
    )
    extract_parser.add_argument("input", type=Path, help="input .xclbin path")
    extract_parser.add_argument(
        "--out",
        "-o",
        type=Path,
        required=True,
        help="output directory for section blobs + metadata.json",
    )
    extract_parser.add_argument(
        "--kind",
        "-k",
        type=_parse_kind,
        action="append",
        help="section kind name or number to extract (repeatable; default: all)",
    )
    extract_parser.add_argument(
        "--hex",
        action="store_true",
        help="embed each payload as a hex string in metadata.json",
    )
    extract_parser.add_argument(
        "--overwrite",
        action="store_true",
        help="remove and recreate the output directory if it already exists",
    )

    meta_parser = subparsers.add_parser(
        "system-metadata",
        help="print the SYSTEM_METADATA payload as a run-summary JSON fragment",
    )
    meta_parser.add_argument("input", type=Path, help="input .xclbin path")

    return parser


def _run_list(args: argparse.Namespace) -> int:
    result = list_sections(args.input)
    if args.json:
        print(json.dumps(result, indent=2))
        return 0

    print(f"{result['path']}: uuid={result['uuid']} platform={result['platform_vbnv']}")
    for s in result["sections"]:
        print(
            "  [{:3d}] {:<24s} name={:<16s} offset=0x{:08x} size={}".format(
                s["index"], s["kind_name"], s["name"], s["offset"], s["size"]
            )
        )
    return 0


def _run_extract(args: argparse.Namespace) -> int:
    result = extract_file(
        args.input,
        args.out,
        kinds=args.kind,
        overwrite=args.overwrite,
        include_hex=args.hex,
    )
    print(f"Extraction complete: {result['section_count']} section(s).")
    print(f"Metadata: {result['metadata_path']}")
    for s in result["sections"]:
        print(f"  {s['path']}: {s['kind_name']} size={s['size']} sha256={s['sha256'][:16]}")
    return 0


def _run_system_metadata(args: argparse.Namespace) -> int:
    fragment = system_diagram(args.input)
    if not fragment:
        print(f"no SYSTEM_METADATA section in {args.input}", file=sys.stderr)
    print(json.dumps(fragment, indent=2))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "list":
            return _run_list(args)
        if args.command == "extract":
            return _run_extract(args)
        if args.command == "system-metadata":
            return _run_system_metadata(args)
        parser.error(f"unknown command: {args.command}")
    except XclbinError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except OSError as exc:
        print(f"io error: {exc}", file=sys.stderr)
        return 1

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
