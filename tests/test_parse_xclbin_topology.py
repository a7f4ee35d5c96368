"""Kernel / memory-bank / connectivity decoding and bitmap derivation."""

from __future__ import annotations

import json
import logging
import random
import struct
import uuid

import numpy as np
import pytest

import axlf_container as ax
import parse_xclbin_topology as topo
from axlf_container import SectionKind
from xclbin_fixtures import (
    DEFAULT_UUID,
    IP_DDR4_CONTROLLER,
    IP_MB,
    BankEntry,
    ContainerBuilder,
    IpEntry,
    connectivity_payload,
    ip_layout_payload,
    mem_topology_payload,
    topology_container,
)


def _conv_relu_container() -> bytes:
    return topology_container(
        kernels=[IpEntry("conv", 0x1800000), IpEntry("relu", 0x1810000)],
        banks=[BankEntry(f"bank{i}", base_address=i << 34) for i in range(4)],
        connections=[(0, 0, 1), (0, 0, 3), (0, 1, 2)],
    )


def test_conv_relu_bitmap() -> None:
    model = topo.decode_topology(_conv_relu_container())

    assert [k.name for k in model.kernels] == ["conv", "relu"]
    assert model.bank_mask(0) == 0b1010
    assert model.bank_mask(1) == 0b0100
    assert model.banks_for(0) == (1, 3)
    assert model.default_bank(0) == 1
    assert model.default_bank(1) == 2
    assert model.kernel_index("relu") == 1
    assert model.kernel_index("missing") is None
    assert model.uuid == DEFAULT_UUID


def test_round_trip_preserves_order_and_fields() -> None:
    rng = random.Random(7)
    kernels = [IpEntry(f"krnl_{i}", rng.getrandbits(64)) for i in range(5)]
    banks = [
        BankEntry(
            f"HBM[{i}]",
            kind=rng.choice([1, 6, 7]),
            in_use=bool(i % 2),
            size=rng.getrandbits(40),
            base_address=rng.getrandbits(64),
        )
        for i in range(9)
    ]
    connections = [(rng.randrange(8), rng.randrange(5), rng.randrange(9)) for _ in range(17)]

    model = topo.decode_topology(topology_container(kernels, banks, connections))

    assert [(k.name, k.base_address) for k in model.kernels] == [
        (k.name, k.base_address) for k in kernels
    ]
    assert [(int(b.kind), b.in_use, b.size, b.base_address, b.tag) for b in model.banks] == [
        (b.kind, b.in_use, b.size, b.base_address, b.tag) for b in banks
    ]
    assert [(c.argument_index, c.kernel_index, c.bank_index) for c in model.connections] == connections


def test_bitmap_matches_connections_exactly() -> None:
    rng = random.Random(11)
    n_kernels, n_banks = 6, 64
    connections = [(0, rng.randrange(n_kernels), rng.randrange(n_banks)) for _ in range(40)]
    blob = topology_container(
        [IpEntry(f"cu{i}", i) for i in range(n_kernels)],
        [BankEntry(f"b{i}") for i in range(n_banks)],
        connections,
    )

    model = topo.decode_topology(blob)

    linked = {(k, b) for _, k, b in connections}
    for k in range(n_kernels):
        mask = model.bank_mask(k)
        for b in range(n_banks):
            assert bool(mask & (1 << b)) == ((k, b) in linked)


def test_bank_63_uses_full_width() -> None:
    blob = topology_container(
        [IpEntry("wide", 0)],
        [BankEntry(f"b{i}") for i in range(64)],
        [(0, 0, 63), (1, 0, 0)],
    )

    model = topo.decode_topology(blob)

    assert model.bank_mask(0) == (1 << 63) | 1


def test_non_kernel_ips_do_not_consume_an_index() -> None:
    blob = topology_container(
        [
            IpEntry("microblaze", 0x0, ip_type=IP_MB),
            IpEntry("vadd", 0x1000),
            IpEntry("ddr4_ctrl", 0x2000, ip_type=IP_DDR4_CONTROLLER),
            IpEntry("vmul", 0x3000),
        ],
        [BankEntry("bank0"), BankEntry("bank1")],
        [(0, 0, 0), (1, 1, 1)],
    )

    model = topo.decode_topology(blob)

    assert [(k.name, k.base_address) for k in model.kernels] == [("vadd", 0x1000), ("vmul", 0x3000)]
    assert model.bank_mask(0) == 0b01
    assert model.bank_mask(1) == 0b10


def test_kernel_capacity_boundary() -> None:
    limits = topo.DecodeLimits(max_kernels=4)
    at_capacity = topology_container([IpEntry(f"k{i}", i) for i in range(4)], [], [])
    over_capacity = topology_container([IpEntry(f"k{i}", i) for i in range(5)], [], [])

    assert len(topo.decode_ip_layout(at_capacity, limits)) == 4
    with pytest.raises(ax.CapacityExceeded) as excinfo:
        topo.decode_topology(over_capacity, limits)
    assert excinfo.value.capacity == 4


def test_default_kernel_capacity_boundary() -> None:
    at_capacity = topology_container(
        [IpEntry(f"k{i}", i) for i in range(topo.MAX_KERNELS)], [BankEntry("b")], []
    )
    over_capacity = topology_container(
        [IpEntry(f"k{i}", i) for i in range(topo.MAX_KERNELS + 1)], [BankEntry("b")], []
    )

    assert len(topo.decode_topology(at_capacity).kernels) == topo.MAX_KERNELS
    with pytest.raises(ax.CapacityExceeded):
        topo.decode_topology(over_capacity)


def test_non_kernel_entries_do_not_count_against_capacity() -> None:
    limits = topo.DecodeLimits(max_kernels=2)
    blob = topology_container(
        [IpEntry("mb", 0, ip_type=IP_MB), IpEntry("a", 1), IpEntry("mb2", 2, ip_type=IP_MB), IpEntry("b", 3)],
        [],
        [],
    )

    assert [k.name for k in topo.decode_ip_layout(blob, limits)] == ["a", "b"]


def test_bank_capacity_boundary() -> None:
    at_capacity = topology_container([], [BankEntry(f"b{i}") for i in range(64)], [])
    over_capacity = topology_container([], [BankEntry(f"b{i}") for i in range(65)], [])

    assert len(topo.decode_mem_topology(at_capacity)) == 64
    with pytest.raises(ax.CapacityExceeded) as excinfo:
        topo.decode_mem_topology(over_capacity)
    assert excinfo.value.count == 65


def test_bank_capacity_checked_before_reading_entries() -> None:
    payload = mem_topology_payload([], count=1000)
    blob = ContainerBuilder().add(SectionKind.MEM_TOPOLOGY, payload).build()

    with pytest.raises(ax.CapacityExceeded):
        topo.decode_mem_topology(blob)


@pytest.mark.parametrize(
    "missing",
    [SectionKind.MEM_TOPOLOGY, SectionKind.CONNECTIVITY, SectionKind.IP_LAYOUT],
)
def test_missing_section_aborts_build(missing: SectionKind) -> None:
    blob = topology_container([IpEntry("k", 0)], [BankEntry("b")], [(0, 0, 0)], omit=[missing])

    with pytest.raises(ax.SectionNotFound) as excinfo:
        topo.decode_topology(blob)
    assert excinfo.value.kind == missing


def test_missing_mem_topology_fails_decoder() -> None:
    blob = topology_container([IpEntry("k", 0)], [], [], omit=[SectionKind.MEM_TOPOLOGY])

    with pytest.raises(ax.SectionNotFound):
        topo.decode_mem_topology(blob)


@pytest.mark.parametrize(
    "kind, payload",
    [
        (SectionKind.IP_LAYOUT, ip_layout_payload([IpEntry("k", 0)], count=3)),
        (SectionKind.MEM_TOPOLOGY, mem_topology_payload([BankEntry("b")], count=2)),
        (SectionKind.CONNECTIVITY, connectivity_payload([(0, 0, 0)], count=9)),
        (SectionKind.CONNECTIVITY, b"\x01\x00"),
    ],
)
def test_declared_count_beyond_section_is_truncated(kind: SectionKind, payload: bytes) -> None:
    blob = ContainerBuilder().add(kind, payload).build()
    decoders = {
        SectionKind.IP_LAYOUT: topo.decode_ip_layout,
        SectionKind.MEM_TOPOLOGY: topo.decode_mem_topology,
        SectionKind.CONNECTIVITY: topo.decode_connectivity,
    }

    with pytest.raises(ax.TruncatedBuffer):
        decoders[kind](blob)


def test_entries_read_within_section_not_whole_buffer() -> None:
    # IP_LAYOUT claims 2 entries but only carries 1; the next section's bytes must not be read.
    blob = (
        ContainerBuilder()
        .add(SectionKind.IP_LAYOUT, ip_layout_payload([IpEntry("k", 0)], count=2))
        .add(SectionKind.BITSTREAM, ip_layout_payload([IpEntry("ghost", 1)])[8:] * 2)
        .build()
    )

    with pytest.raises(ax.TruncatedBuffer):
        topo.decode_ip_layout(blob)


def test_empty_sections_build_an_empty_model() -> None:
    model = topo.decode_topology(topology_container([], [], []))

    assert model.kernels == ()
    assert model.banks == ()
    assert model.connections == ()
    assert model.bitmap.shape == (0,)


def test_out_of_range_connections_are_skipped(caplog: pytest.LogCaptureFixture) -> None:
    blob = topology_container(
        [IpEntry("k0", 0), IpEntry("k1", 1)],
        [BankEntry("b0"), BankEntry("b1")],
        [(0, 0, 1), (1, 0, 5), (2, 7, 0), (3, -1, 0), (4, 1, -2), (5, 1, 0)],
    )

    with caplog.at_level(logging.WARNING, logger="parse_xclbin_topology"):
        model = topo.decode_topology(blob)

    assert model.bank_mask(0) == 0b10
    assert model.bank_mask(1) == 0b01
    assert len(model.connections) == 6
    assert sum("skipping connection" in r.getMessage() for r in caplog.records) == 4


def test_strict_mode_rejects_out_of_range_connections() -> None:
    blob = topology_container([IpEntry("k0", 0)], [BankEntry("b0")], [(0, 0, 3)])

    with pytest.raises(ax.MalformedRecord):
        topo.decode_topology(blob, topo.DecodeLimits(strict_connectivity=True))


def test_connectivity_preserves_signed_fields() -> None:
    blob = ContainerBuilder().add(
        SectionKind.CONNECTIVITY, connectivity_payload([(-1, 2, 3), (4, -5, 6)])
    ).build()

    records = topo.decode_connectivity(blob)

    assert records == [
        topo.ConnectionRecord(argument_index=-1, kernel_index=2, bank_index=3),
        topo.ConnectionRecord(argument_index=4, kernel_index=-5, bank_index=6),
    ]


def test_bank_kind_and_tag_decoding() -> None:
    blob = ContainerBuilder().add(
        SectionKind.MEM_TOPOLOGY,
        mem_topology_payload(
            [
                BankEntry("DDR[0]", kind=1),
                BankEntry("HBM[31]", kind=6, in_use=False),
                BankEntry("0123456789abcdef", kind=42),
            ]
        ),
    ).build()

    banks = topo.decode_mem_topology(blob)

    assert banks[0].kind is topo.MemoryKind.DDR4
    assert banks[1].kind_name == "HBM"
    assert banks[1].in_use is False
    assert banks[2].kind == 42
    assert banks[2].kind_name == "UNKNOWN_42"
    assert banks[2].tag == "0123456789abcdef"


def test_kernel_name_uses_full_field_without_nul() -> None:
    name = "k" * 64
    blob = ContainerBuilder().add(SectionKind.IP_LAYOUT, ip_layout_payload([IpEntry(name, 0)])).build()

    (kernel,) = topo.decode_ip_layout(blob)

    assert kernel.name == name


def test_model_is_immutable_and_detached_from_buffer() -> None:
    blob = bytearray(_conv_relu_container())
    model = topo.decode_topology(blob)
    blob[:] = b"\x00" * len(blob)

    assert model.kernels[0].name == "conv"
    assert model.bank_mask(0) == 0b1010
    with pytest.raises(ValueError):
        model.bitmap[0] = 0
    with pytest.raises(AttributeError):
        model.kernels = ()  # type: ignore[misc]


def test_bank_mask_rejects_unknown_kernel() -> None:
    model = topo.decode_topology(_conv_relu_container())

    with pytest.raises(IndexError):
        model.bank_mask(2)


def test_build_topology_direct() -> None:
    kernels = [topo.KernelDescriptor("conv", 0), topo.KernelDescriptor("relu", 1)]
    banks = [topo.MemoryBankDescriptor(topo.MemoryKind.DDR4, True, 1, 0, f"b{i}") for i in range(4)]
    connections = [topo.ConnectionRecord(0, 0, 1), topo.ConnectionRecord(0, 0, 3), topo.ConnectionRecord(0, 1, 2)]
    ident = uuid.uuid4()

    model = topo.build_topology(kernels, banks, connections, ident)

    assert model.uuid == ident
    assert model.bitmap.dtype == np.uint64
    assert [int(v) for v in model.bitmap] == [0b1010, 0b0100]


@pytest.mark.parametrize(
    "mask, expected",
    [(0, None), (1, 0), (0b1000, 3), (0b1010, 1), (1 << 63, 63)],
)
def test_first_bank(mask: int, expected) -> None:
    assert topo.first_bank(mask) == expected


@pytest.mark.parametrize(
    "kwargs",
    [{"max_kernels": 0}, {"max_banks": 65}, {"max_banks": 0}, {"max_name_len": 65}],
)
def test_decode_limits_validation(kwargs) -> None:
    with pytest.raises(ValueError):
        topo.DecodeLimits(**kwargs)


def test_to_dict_is_json_serializable() -> None:
    report = topo.decode_topology(_conv_relu_container()).to_dict()

    decoded = json.loads(json.dumps(report))
    assert decoded["uuid"] == str(DEFAULT_UUID)
    assert decoded["kernels"][0]["banks"] == [1, 3]
    assert decoded["banks"][0]["kind"] == "DDR4"


def test_cli_text_and_json(tmp_path, capsys) -> None:
    path = tmp_path / "design.xclbin"
    path.write_bytes(_conv_relu_container())

    assert topo.main([str(path)]) == 0
    text = capsys.readouterr().out
    assert "kernel[0] conv base=0x1800000 banks=0x000a" in text

    assert topo.main([str(path), "--json"]) == 0
    report = json.loads(capsys.readouterr().out)
    assert report["reports"][0]["kernels"][1]["bank_mask"] == 0b0100


def test_cli_reports_decode_errors(tmp_path, capsys) -> None:
    path = tmp_path / "broken.xclbin"
    path.write_bytes(topology_container([IpEntry("k", 0)], [], [], omit=[SectionKind.MEM_TOPOLOGY]))

    assert topo.main([str(path)]) == 1
    assert "MEM_TOPOLOGY" in capsys.readouterr().err


def test_cli_truncated_header(tmp_path, capsys) -> None:
    path = tmp_path / "short.xclbin"
    path.write_bytes(struct.pack("<8s", ax.AXLF_MAGIC))

    assert topo.main([str(path)]) == 1
    assert "error:" in capsys.readouterr().err
