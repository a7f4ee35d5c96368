#!/usr/bin/env python3
"""Decode xclbin kernel/memory topology into a routing model.

Reads the IP_LAYOUT, MEM_TOPOLOGY and CONNECTIVITY sections of an AXLF
container and builds:
- the ordered kernel (compute unit) list, non-kernel IPs filtered out
- the ordered memory bank list
- the kernel-argument -> bank connection records
- a per-kernel 64-bit bank accessibility bitmap used for buffer placement
"""

from __future__ import annotations

import argparse
import datetime as _dt
import enum
import hashlib
import json
import logging
import sys
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

import axlf_container as ax
from axlf_container import (
    Buffer,
    CapacityExceeded,
    MalformedRecord,
    SectionKind,
    XclbinError,
)

logger = logging.getLogger(__name__)

MAX_KERNELS = 128
MAX_MEM_BANKS = 64
MAX_NAME_LEN = 64
TAG_LEN = 16
BITMAP_WIDTH = 64

IP_LAYOUT_ENTRIES_OFFSET = 8
IP_DATA_SIZE = 80
IP_BASE_ADDRESS_FIELD = 8
IP_NAME_FIELD = 16

MEM_TOPOLOGY_ENTRIES_OFFSET = 8
MEM_DATA_SIZE = 40
MEM_USED_FIELD = 1
MEM_SIZE_FIELD = 8
MEM_BASE_ADDRESS_FIELD = 16
MEM_TAG_FIELD = 24

CONNECTIVITY_ENTRIES_OFFSET = 4
CONNECTION_SIZE = 12


class IpType(enum.IntEnum):
    MB = 0
    KERNEL = 1
    DNASC = 2
    DDR4_CONTROLLER = 3
    MEM_DDR4 = 4
    MEM_HBM = 5


class MemoryKind(enum.IntEnum):
    DDR3 = 0
    DDR4 = 1
    DRAM = 2
    STREAMING = 3
    PREALLOCATED_GLOB = 4
    ARE = 5
    HBM = 6
    BRAM = 7
    URAM = 8
    STREAMING_CONNECTION = 9


@dataclass(frozen=True)
class DecodeLimits:
    """Capacity contract for one decode.

    Args:
        max_kernels: Maximum number of kernel-typed IP_LAYOUT entries
        max_banks: Maximum number of MEM_TOPOLOGY entries (bitmap width caps this at 64)
        max_name_len: Width of the kernel name field in bytes
        strict_connectivity: Reject connection records pointing at unknown kernels/banks
    """

    max_kernels: int = MAX_KERNELS
    max_banks: int = MAX_MEM_BANKS
    max_name_len: int = MAX_NAME_LEN
    strict_connectivity: bool = False

    def __post_init__(self) -> None:
        if self.max_kernels <= 0:
            raise ValueError("max_kernels must be positive")
        if not 0 < self.max_banks <= BITMAP_WIDTH:
            raise ValueError(f"max_banks must be in 1..{BITMAP_WIDTH}")
        if not 0 < self.max_name_len <= MAX_NAME_LEN:
            raise ValueError(f"max_name_len must be in 1..{MAX_NAME_LEN}")


DEFAULT_LIMITS = DecodeLimits()


@dataclass(frozen=True)
class KernelDescriptor:
    name: str
    base_address: int


@dataclass(frozen=True)
class MemoryBankDescriptor:
    kind: Union[MemoryKind, int]
    in_use: bool
    size: int
    base_address: int
    tag: str

    @property
    def kind_name(self) -> str:
        try:
            return MemoryKind(self.kind).name
        except ValueError:
            return f"UNKNOWN_{int(self.kind)}"


@dataclass(frozen=True)
class ConnectionRecord:
    argument_index: int
    kernel_index: int
    bank_index: int


def first_bank(mask: int) -> Optional[int]:
    """Index of the lowest set bit in a bank accessibility mask, None if empty."""
    mask &= (1 << BITMAP_WIDTH) - 1
    if mask == 0:
        return None
    return (mask & -mask).bit_length() - 1


@dataclass(frozen=True)
class TopologyModel:
    uuid: uuid.UUID
    kernels: Tuple[KernelDescriptor, ...]
    banks: Tuple[MemoryBankDescriptor, ...]
    connections: Tuple[ConnectionRecord, ...]
    bitmap: np.ndarray = field(repr=False, compare=False)

    def bank_mask(self, kernel_index: int) -> int:
        if not 0 <= kernel_index < len(self.kernels):
            raise IndexError(f"kernel index {kernel_index} out of range ({len(self.kernels)} kernels)")
        return int(self.bitmap[kernel_index])

    def banks_for(self, kernel_index: int) -> Tuple[int, ...]:
        mask = self.bank_mask(kernel_index)
        return tuple(i for i in range(BITMAP_WIDTH) if mask & (1 << i))

    def default_bank(self, kernel_index: int) -> Optional[int]:
        return first_bank(self.bank_mask(kernel_index))

    def kernel_index(self, name: str) -> Optional[int]:
        for i, kernel in enumerate(self.kernels):
            if kernel.name == name:
                return i
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uuid": str(self.uuid),
            "kernels": [
                {
                    "index": i,
                    "name": k.name,
                    "base_address": k.base_address,
                    "bank_mask": self.bank_mask(i),
                    "banks": list(self.banks_for(i)),
                }
                for i, k in enumerate(self.kernels)
            ],
            "banks": [
                {
                    "index": i,
                    "kind": b.kind_name,
                    "in_use": b.in_use,
                    "size": b.size,
                    "base_address": b.base_address,
                    "tag": b.tag,
                }
                for i, b in enumerate(self.banks)
            ],
            "connections": [
                {
                    "argument_index": c.argument_index,
                    "kernel_index": c.kernel_index,
                    "bank_index": c.bank_index,
                }
                for c in self.connections
            ],
        }


def _section_view(data: Buffer, kind: SectionKind) -> memoryview:
    section = ax.require_section(data, kind)
    return ax.section_payload(data, section)


def _entry_count(payload: memoryview, kind: SectionKind) -> int:
    return ax.u32(payload, 0, f"{kind.name}.count")


def decode_ip_layout(data: Buffer, limits: DecodeLimits = DEFAULT_LIMITS) -> List[KernelDescriptor]:
    payload = _section_view(data, SectionKind.IP_LAYOUT)
    count = _entry_count(payload, SectionKind.IP_LAYOUT)
    ax.require_span(
        len(payload), IP_LAYOUT_ENTRIES_OFFSET, count * IP_DATA_SIZE, f"IP_LAYOUT ({count} entries)"
    )

    kernels: List[KernelDescriptor] = []
    for i in range(count):
        base = IP_LAYOUT_ENTRIES_OFFSET + (i * IP_DATA_SIZE)
        ip_type = ax.u32(payload, base, f"ip_data[{i}].type")
        if ip_type != IpType.KERNEL:
            continue
        if len(kernels) == limits.max_kernels:
            raise CapacityExceeded("IP_LAYOUT kernels", len(kernels) + 1, limits.max_kernels)
        kernel = KernelDescriptor(
            name=ax.c_string(payload, base + IP_NAME_FIELD, limits.max_name_len, f"ip_data[{i}].name"),
            base_address=ax.u64(payload, base + IP_BASE_ADDRESS_FIELD, f"ip_data[{i}].base_address"),
        )
        logger.debug(
            "index = %d, kernel name = %s, base_addr = %x", len(kernels), kernel.name, kernel.base_address
        )
        kernels.append(kernel)

    logger.debug("IP LAYOUT - %d kernels", len(kernels))
    return kernels


def decode_mem_topology(
    data: Buffer, limits: DecodeLimits = DEFAULT_LIMITS
) -> List[MemoryBankDescriptor]:
    payload = _section_view(data, SectionKind.MEM_TOPOLOGY)
    count = _entry_count(payload, SectionKind.MEM_TOPOLOGY)
    logger.debug("MEM TOPOLOGY - %d banks", count)
    if count > limits.max_banks:
        raise CapacityExceeded("MEM_TOPOLOGY banks", count, limits.max_banks)
    ax.require_span(
        len(payload),
        MEM_TOPOLOGY_ENTRIES_OFFSET,
        count * MEM_DATA_SIZE,
        f"MEM_TOPOLOGY ({count} entries)",
    )

    banks: List[MemoryBankDescriptor] = []
    for i in range(count):
        base = MEM_TOPOLOGY_ENTRIES_OFFSET + (i * MEM_DATA_SIZE)
        raw_kind = ax.u8(payload, base, f"mem_data[{i}].type")
        try:
            kind: Union[MemoryKind, int] = MemoryKind(raw_kind)
        except ValueError:
            kind = raw_kind
        bank = MemoryBankDescriptor(
            kind=kind,
            in_use=ax.u8(payload, base + MEM_USED_FIELD, f"mem_data[{i}].used") != 0,
            size=ax.u64(payload, base + MEM_SIZE_FIELD, f"mem_data[{i}].size"),
            base_address=ax.u64(payload, base + MEM_BASE_ADDRESS_FIELD, f"mem_data[{i}].base_address"),
            tag=ax.c_string(payload, base + MEM_TAG_FIELD, TAG_LEN, f"mem_data[{i}].tag"),
        )
        logger.debug(
            "index=%d, tag=%s, type = %s, used = %d, size = %x, base = %x",
            i,
            bank.tag,
            bank.kind_name,
            bank.in_use,
            bank.size,
            bank.base_address,
        )
        banks.append(bank)
    return banks


def decode_connectivity(data: Buffer) -> List[ConnectionRecord]:
    payload = _section_view(data, SectionKind.CONNECTIVITY)
    count = _entry_count(payload, SectionKind.CONNECTIVITY)
    logger.debug("CONNECTIVITY - %d connections", count)
    ax.require_span(
        len(payload),
        CONNECTIVITY_ENTRIES_OFFSET,
        count * CONNECTION_SIZE,
        f"CONNECTIVITY ({count} entries)",
    )

    out: List[ConnectionRecord] = []
    for i in range(count):
        base = CONNECTIVITY_ENTRIES_OFFSET + (i * CONNECTION_SIZE)
        record = ConnectionRecord(
            argument_index=ax.i32(payload, base, f"connection[{i}].arg_index"),
            kernel_index=ax.i32(payload, base + 4, f"connection[{i}].ip_layout_index"),
            bank_index=ax.i32(payload, base + 8, f"connection[{i}].mem_data_index"),
        )
        logger.debug(
            "index = %d, arg_idx = %d, ip_idx = %d, mem_idx = %d",
            i,
            record.argument_index,
            record.kernel_index,
            record.bank_index,
        )
        out.append(record)
    return out


def derive_bitmap(
    kernel_count: int,
    bank_count: int,
    connections: Sequence[ConnectionRecord],
    *,
    strict: bool = False,
) -> np.ndarray:
    """Per-kernel uint64 masks; bit i set iff a connection links the kernel to bank i."""
    bitmap = np.zeros(kernel_count, dtype=np.uint64)
    usable_banks = min(bank_count, BITMAP_WIDTH)

    kernel_idx: List[int] = []
    bank_idx: List[int] = []
    for n, conn in enumerate(connections):
        if 0 <= conn.kernel_index < kernel_count and 0 <= conn.bank_index < usable_banks:
            kernel_idx.append(conn.kernel_index)
            bank_idx.append(conn.bank_index)
            continue
        msg = (
            f"connection[{n}] (arg={conn.argument_index}, kernel={conn.kernel_index}, "
            f"bank={conn.bank_index}) outside {kernel_count} kernels x {bank_count} banks"
        )
        if strict:
            raise MalformedRecord(msg)
        logger.warning("skipping %s", msg)

    if kernel_idx:
        bits = np.left_shift(np.uint64(1), np.asarray(bank_idx, dtype=np.uint64))
        np.bitwise_or.at(bitmap, np.asarray(kernel_idx, dtype=np.intp), bits)
    bitmap.setflags(write=False)
    return bitmap


def build_topology(
    kernels: Sequence[KernelDescriptor],
    banks: Sequence[MemoryBankDescriptor],
    connections: Sequence[ConnectionRecord],
    container_uuid: uuid.UUID,
    limits: DecodeLimits = DEFAULT_LIMITS,
) -> TopologyModel:
    if len(kernels) > limits.max_kernels:
        raise CapacityExceeded("kernels", len(kernels), limits.max_kernels)
    if len(banks) > limits.max_banks:
        raise CapacityExceeded("banks", len(banks), limits.max_banks)

    bitmap = derive_bitmap(
        len(kernels), len(banks), connections, strict=limits.strict_connectivity
    )
    model = TopologyModel(
        uuid=container_uuid,
        kernels=tuple(kernels),
        banks=tuple(banks),
        connections=tuple(connections),
        bitmap=bitmap,
    )
    logger.debug("CU DDR connections bitmap:")
    for i, kernel in enumerate(model.kernels):
        logger.debug("\t%s - 0x%04x", kernel.name, model.bank_mask(i))
    return model


def decode_topology(data: Buffer, limits: Optional[DecodeLimits] = None) -> TopologyModel:
    limits = limits or DEFAULT_LIMITS
    banks = decode_mem_topology(data, limits)
    connections = decode_connectivity(data)
    kernels = decode_ip_layout(data, limits)
    header = ax.parse_header(data)
    return build_topology(kernels, banks, connections, header.uuid, limits)


def _sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _iso_utc_now() -> str:
    return _dt.datetime.now(tz=_dt.timezone.utc).replace(microsecond=0).isoformat()


def parse_xclbin_file(path: Path, limits: Optional[DecodeLimits] = None) -> Dict[str, Any]:
    blob = path.read_bytes()
    header = ax.parse_header(blob)
    model = decode_topology(blob, limits)
    report = {
        "path": str(path),
        "size_bytes": len(blob),
        "sha256": _sha256_bytes(blob),
        "platform_vbnv": header.platform_vbnv,
        "version": header.version,
    }
    report.update(model.to_dict())
    return report


def build_report(paths: List[Path], limits: Optional[DecodeLimits] = None) -> Dict[str, Any]:
    reports = [parse_xclbin_file(p, limits) for p in paths]
    return {
        "tool": "parse_xclbin_topology.py",
        "generated_at_utc": _iso_utc_now(),
        "input_paths": [str(p) for p in paths],
        "report_count": len(reports),
        "reports": reports,
    }


def render_text(report: Dict[str, Any]) -> str:
    lines: List[str] = []
    lines.append(f"tool={report['tool']} generated_at={report['generated_at_utc']}")
    lines.append(f"report_count={report['report_count']}")
    lines.append("")

    for idx, r in enumerate(report["reports"], start=1):
        lines.append(f"[xclbin {idx}] {r['path']}")
        lines.append(
            "  size={} uuid={} platform={} version={}".format(
                r["size_bytes"], r["uuid"], r["platform_vbnv"], r["version"]
            )
        )
        lines.append(
            "  kernels={} banks={} connections={}".format(
                len(r["kernels"]), len(r["banks"]), len(r["connections"])
            )
        )
        for k in r["kernels"]:
            lines.append(
                "    kernel[{}] {} base=0x{:x} banks=0x{:04x}".format(
                    k["index"], k["name"], k["base_address"], k["bank_mask"]
                )
            )
        for b in r["banks"]:
            lines.append(
                "    bank[{}] {} type={} used={} size=0x{:x} base=0x{:x}".format(
                    b["index"], b["tag"], b["kind"], int(b["in_use"]), b["size"], b["base_address"]
                )
            )
        lines.append("")
    return "\n".join(lines)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Decode xclbin IP_LAYOUT / MEM_TOPOLOGY / CONNECTIVITY into a kernel-to-bank map."
    )
    parser.add_argument("paths", nargs="+", type=Path, help="xclbin container files")
    parser.add_argument("--json", action="store_true", help="Emit JSON report.")
    parser.add_argument("--max-kernels", type=int, default=MAX_KERNELS, help="Kernel capacity.")
    parser.add_argument("--max-banks", type=int, default=MAX_MEM_BANKS, help="Memory bank capacity (<= 64).")
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Fail on connections referencing unknown kernels or banks instead of skipping them.",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Log per-record decode events.")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        limits = DecodeLimits(
            max_kernels=args.max_kernels,
            max_banks=args.max_banks,
            strict_connectivity=args.strict,
        )
    except ValueError as exc:
        parser.error(str(exc))

    try:
        report = build_report(args.paths, limits)
    except XclbinError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except OSError as exc:
        print(f"io error: {exc}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(report, indent=2, sort_keys=True))
    else:
        print(render_text(report))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
