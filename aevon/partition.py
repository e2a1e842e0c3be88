"""Stable mapping of tenants onto a fixed set of logical partitions."""

from __future__ import annotations

PARTITION_COUNT = 256

_FNV32_OFFSET = 0x811C9DC5
_FNV32_PRIME = 0x01000193


def _fnv1a_32(data: bytes) -> int:
    value = _FNV32_OFFSET
    for byte in data:
        value = ((value ^ byte) * _FNV32_PRIME) & 0xFFFFFFFF
    return value


def partition_for(tenant_id: str) -> int:
    """Return the partition for ``tenant_id`` using FNV-32a."""
    return _fnv1a_32(tenant_id.encode("utf-8")) % PARTITION_COUNT