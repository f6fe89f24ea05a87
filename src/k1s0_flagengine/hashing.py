"""決定的な文字列ハッシュとバケット割り当て"""

from __future__ import annotations

_INT32_MASK = 0xFFFFFFFF
_INT32_SIGN = 0x80000000

EXPERIMENT_BUCKETS = 100


def _utf16_units(key: str) -> list[int]:
    data = key.encode("utf-16-le")
    return [int.from_bytes(data[i : i + 2], "little") for i in range(0, len(data), 2)]


def java_hash(key: str) -> int:
    """`h = h * 31 + c` を 32bit 符号付き整数としてラップしながら計算する。

    文字は UTF-16 コードユニット単位で扱うため、他言語の実装と同じ値になる。
    """
    h = 0
    for unit in _utf16_units(key):
        h = (h * 31 + unit) & _INT32_MASK
    return h - (1 << 32) if h & _INT32_SIGN else h


def hash_key(key: str) -> int:
    """java_hash の絶対値（非負整数）。"""
    return abs(java_hash(key))


def bucket(key: str, modulus: int = EXPERIMENT_BUCKETS) -> int:
    """キーを [0, modulus) のバケットに割り当てる。"""
    if modulus <= 0:
        raise ValueError(f"modulus must be positive: {modulus}")
    return hash_key(key) % modulus
