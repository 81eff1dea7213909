"""Encoded-polyline codec (the Google / Strava "polyline5" format).

Each coordinate is stored as the delta from the previous one, multiplied by
1e5 and rounded, zig-zag encoded (sign in the low bit) and emitted in 5-bit
chunks with 0x20 as the continuation bit, each chunk offset by 63 into
printable ASCII.

``decode`` returns (lat, lon) pairs because that is the order the format
itself uses.  Callers that persist geometry must swap to (lon, lat); see
``to_lon_lat``.
"""

from __future__ import annotations

from typing import Iterable

_PRECISION = 1e5
_CHUNK_MASK = 0x1F
_CONTINUATION = 0x20
_OFFSET = 63


class PolylineDecodeError(ValueError):
    """Raised when an encoded polyline is truncated or contains invalid bytes."""


def _read_value(encoded: str, index: int) -> tuple[int, int]:
    """Read one zig-zag varint starting at ``index``; return (value, next_index)."""
    result = 0
    shift = 0
    while True:
        if index >= len(encoded):
            raise PolylineDecodeError(f"Truncated polyline at offset {index}")
        chunk = ord(encoded[index]) - _OFFSET
        index += 1
        if chunk < 0 or chunk > 0x3F:
            raise PolylineDecodeError(
                f"Invalid polyline character {encoded[index - 1]!r} at offset {index - 1}"
            )
        result |= (chunk & _CHUNK_MASK) << shift
        shift += 5
        if chunk < _CONTINUATION:
            break
    value = ~(result >> 1) if result & 1 else result >> 1
    return value, index


def decode(encoded: str) -> list[tuple[float, float]]:
    """Decode a polyline into an ordered list of (lat, lon) pairs.

    Args:
        encoded: The encoded polyline string.  Empty input yields an empty list.

    Returns:
        List of (latitude, longitude) tuples.

    Raises:
        PolylineDecodeError: If the string is truncated or malformed.
    """
    coords: list[tuple[float, float]] = []
    index = 0
    lat = 0
    lon = 0
    while index < len(encoded):
        dlat, index = _read_value(encoded, index)
        dlon, index = _read_value(encoded, index)
        lat += dlat
        lon += dlon
        coords.append((lat / _PRECISION, lon / _PRECISION))
    return coords


def _write_value(value: int, out: list[str]) -> None:
    value = ~(value << 1) if value < 0 else value << 1
    while value >= _CONTINUATION:
        out.append(chr((_CONTINUATION | (value & _CHUNK_MASK)) + _OFFSET))
        value >>= 5
    out.append(chr(value + _OFFSET))


def encode(coords: Iterable[tuple[float, float]]) -> str:
    """Encode (lat, lon) pairs into a polyline string."""
    out: list[str] = []
    prev_lat = 0
    prev_lon = 0
    for lat, lon in coords:
        ilat = round(lat * _PRECISION)
        ilon = round(lon * _PRECISION)
        _write_value(ilat - prev_lat, out)
        _write_value(ilon - prev_lon, out)
        prev_lat, prev_lon = ilat, ilon
    return "".join(out)


def to_lon_lat(coords: Iterable[tuple[float, float]]) -> list[tuple[float, float]]:
    """Swap decoded (lat, lon) pairs into WKT (lon, lat) order."""
    return [(lon, lat) for lat, lon in coords]
