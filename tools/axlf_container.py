"""Bounds-checked access to AXLF (xclbin) accelerator containers.

Covers the parts of the container every metadata consumer needs:
- top-level header (magic, identity UUID, version, platform VBNV)
- section-header table lookup by section kind
- raw section extraction plus a hex encoding for report passthrough

Every read is checked against the buffer (and, for payloads, the declared
section size) before it is performed; nothing is reinterpreted in place.
"""

from __future__ import annotations

import enum
import struct
import uuid
from dataclasses import dataclass
from typing import List, Optional, Union

Buffer = Union[bytes, bytearray, memoryview]

AXLF_MAGIC = b"xclbin2\x00"

# Top-level header field offsets.
SIGNATURE_LENGTH_OFFSET = 8
UNIQUE_ID_OFFSET = 296
HEADER_OFFSET = 304
LENGTH_OFFSET = HEADER_OFFSET + 0
TIMESTAMP_OFFSET = HEADER_OFFSET + 8
VERSION_PATCH_OFFSET = HEADER_OFFSET + 24
VERSION_MAJOR_OFFSET = HEADER_OFFSET + 26
VERSION_MINOR_OFFSET = HEADER_OFFSET + 27
MODE_OFFSET = HEADER_OFFSET + 28
PLATFORM_VBNV_OFFSET = HEADER_OFFSET + 48
PLATFORM_VBNV_LEN = 64
UUID_OFFSET = HEADER_OFFSET + 112
NUM_SECTIONS_OFFSET = HEADER_OFFSET + 144
SECTION_TABLE_OFFSET = 456

SECTION_HEADER_SIZE = 40
SECTION_NAME_OFFSET = 4
SECTION_NAME_LEN = 16
SECTION_OFFSET_FIELD = 24
SECTION_SIZE_FIELD = 32


class XclbinError(Exception):
    """Base class for container decode failures."""


class SectionNotFound(XclbinError):
    def __init__(self, kind: Union["SectionKind", int]):
        self.kind = kind
        super().__init__(f"section {section_kind_name(kind)} not found in container")


class CapacityExceeded(XclbinError):
    def __init__(self, what: str, count: int, capacity: int):
        self.what = what
        self.count = count
        self.capacity = capacity
        super().__init__(f"{what}: {count} entries exceeds capacity of {capacity}")


class TruncatedBuffer(XclbinError):
    """A declared offset/size points outside the buffer or section."""


class MalformedRecord(XclbinError):
    """Structurally invalid header or record."""


class SectionKind(enum.IntEnum):
    BITSTREAM = 0
    CLEARING_BITSTREAM = 1
    EMBEDDED_METADATA = 2
    FIRMWARE = 3
    DEBUG_DATA = 4
    SCHED_FIRMWARE = 5
    MEM_TOPOLOGY = 6
    CONNECTIVITY = 7
    IP_LAYOUT = 8
    DEBUG_IP_LAYOUT = 9
    DESIGN_CHECK_POINT = 10
    CLOCK_FREQ_TOPOLOGY = 11
    MCS = 12
    BMC = 13
    BUILD_METADATA = 14
    KEYVALUE_METADATA = 15
    USER_METADATA = 16
    DNA_CERTIFICATE = 17
    PDI = 18
    BITSTREAM_PARTIAL_PDI = 19
    PARTITION_METADATA = 20
    EMULATION_DATA = 21
    SYSTEM_METADATA = 22


def section_kind_name(kind: Union[SectionKind, int]) -> str:
    try:
        return SectionKind(kind).name
    except ValueError:
        return f"UNKNOWN_{int(kind)}"


def _coerce_kind(raw: int) -> Union[SectionKind, int]:
    try:
        return SectionKind(raw)
    except ValueError:
        return raw


@dataclass(frozen=True)
class ContainerHeader:
    magic: bytes
    signature_length: int
    unique_id: int
    length: int
    timestamp: int
    version: str
    mode: int
    platform_vbnv: str
    uuid: uuid.UUID
    num_sections: int


@dataclass(frozen=True)
class SectionHeader:
    index: int
    kind: Union[SectionKind, int]
    name: str
    offset: int
    size: int

    @property
    def kind_name(self) -> str:
        return section_kind_name(self.kind)

    @property
    def end(self) -> int:
        return self.offset + self.size


@dataclass(frozen=True)
class RawSection:
    kind: Union[SectionKind, int]
    name: str
    offset: int
    size: int
    payload: bytes

    @property
    def hex(self) -> str:
        return to_hex(self.payload)


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise MalformedRecord(msg)


def require_span(limit: int, off: int, size: int, what: str) -> None:
    """Raise TruncatedBuffer unless ``[off, off + size)`` lies within ``[0, limit)``."""
    if off < 0 or size < 0 or off + size > limit:
        raise TruncatedBuffer(
            f"{what}: bytes [{off}, {off + size}) exceed available length {limit}"
        )


def _unpack(fmt: str, data: Buffer, off: int, what: str) -> int:
    require_span(len(data), off, struct.calcsize(fmt), what)
    return struct.unpack_from(fmt, data, off)[0]


def u8(data: Buffer, off: int, what: str = "u8") -> int:
    return _unpack("<B", data, off, what)


def u16(data: Buffer, off: int, what: str = "u16") -> int:
    return _unpack("<H", data, off, what)


def u32(data: Buffer, off: int, what: str = "u32") -> int:
    return _unpack("<I", data, off, what)


def i32(data: Buffer, off: int, what: str = "i32") -> int:
    return _unpack("<i", data, off, what)


def u64(data: Buffer, off: int, what: str = "u64") -> int:
    return _unpack("<Q", data, off, what)


def fixed_bytes(data: Buffer, off: int, size: int, what: str) -> bytes:
    require_span(len(data), off, size, what)
    return bytes(data[off : off + size])


def c_string(data: Buffer, off: int, size: int, what: str) -> str:
    """Decode a NUL-terminated string stored in a fixed ``size``-byte field."""
    raw = fixed_bytes(data, off, size, what)
    end = raw.find(b"\x00")
    if end >= 0:
        raw = raw[:end]
    return raw.decode("utf-8", errors="replace")


def to_hex(data: Buffer) -> str:
    """Lowercase two-digit-per-byte encoding with no separators."""
    return bytes(data).hex()


def parse_header(data: Buffer) -> ContainerHeader:
    require_span(len(data), 0, SECTION_TABLE_OFFSET, "container header")
    magic = fixed_bytes(data, 0, len(AXLF_MAGIC), "magic")
    _require(magic == AXLF_MAGIC, f"bad container magic: {magic!r}")

    major = u8(data, VERSION_MAJOR_OFFSET)
    minor = u8(data, VERSION_MINOR_OFFSET)
    patch = u16(data, VERSION_PATCH_OFFSET)
    return ContainerHeader(
        magic=magic,
        signature_length=i32(data, SIGNATURE_LENGTH_OFFSET, "signature_length"),
        unique_id=u64(data, UNIQUE_ID_OFFSET, "unique_id"),
        length=u64(data, LENGTH_OFFSET, "length"),
        timestamp=u64(data, TIMESTAMP_OFFSET, "timestamp"),
        version=f"{major}.{minor}.{patch}",
        mode=u32(data, MODE_OFFSET, "mode"),
        platform_vbnv=c_string(data, PLATFORM_VBNV_OFFSET, PLATFORM_VBNV_LEN, "platform_vbnv"),
        uuid=uuid.UUID(bytes=fixed_bytes(data, UUID_OFFSET, 16, "uuid")),
        num_sections=u32(data, NUM_SECTIONS_OFFSET, "num_sections"),
    )


def read_section_headers(data: Buffer) -> List[SectionHeader]:
    header = parse_header(data)
    table_size = header.num_sections * SECTION_HEADER_SIZE
    require_span(len(data), SECTION_TABLE_OFFSET, table_size, "section-header table")

    out: List[SectionHeader] = []
    for i in range(header.num_sections):
        base = SECTION_TABLE_OFFSET + (i * SECTION_HEADER_SIZE)
        kind = _coerce_kind(u32(data, base, f"section[{i}].kind"))
        offset = u64(data, base + SECTION_OFFSET_FIELD, f"section[{i}].offset")
        size = u64(data, base + SECTION_SIZE_FIELD, f"section[{i}].size")
        require_span(len(data), offset, size, f"section[{i}] {section_kind_name(kind)}")
        out.append(
            SectionHeader(
                index=i,
                kind=kind,
                name=c_string(data, base + SECTION_NAME_OFFSET, SECTION_NAME_LEN, f"section[{i}].name"),
                offset=offset,
                size=size,
            )
        )
    return out


def find_section(data: Buffer, kind: Union[SectionKind, int]) -> Optional[SectionHeader]:
    for section in read_section_headers(data):
        if section.kind == kind:
            return section
    return None


def require_section(data: Buffer, kind: Union[SectionKind, int]) -> SectionHeader:
    section = find_section(data, kind)
    if section is None:
        raise SectionNotFound(kind)
    return section


def section_payload(data: Buffer, section: SectionHeader) -> memoryview:
    require_span(len(data), section.offset, section.size, f"section {section.kind_name}")
    return memoryview(data).toreadonly()[section.offset : section.end]


def extract_section(data: Buffer, kind: Union[SectionKind, int]) -> Optional[RawSection]:
    section = find_section(data, kind)
    if section is None:
        return None
    return RawSection(
        kind=section.kind,
        name=section.name,
        offset=section.offset,
        size=section.size,
        payload=bytes(section_payload(data, section)),
    )


def system_metadata_hex(data: Buffer) -> str:
    """Hex of the SYSTEM_METADATA payload, or "" when the container has none."""
    raw = extract_section(data, SectionKind.SYSTEM_METADATA)
    if raw is None:
        return ""
    return raw.hex
