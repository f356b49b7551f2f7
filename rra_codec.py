"""Codec and merge engine for hcb_rrd ring-buffer databases.

Files handled:
- <uuid>.dat: schema file, one per device.
    17-byte tag b"hcb_rrd_09082011A"
    str deviceUuid, str deviceVar, str deviceSvc, str sampleType
    then one block per subset until EOF:
      integer devices: int32 reserved[3]
      float devices:   double value, double divider
      int32 t_prev, int32 t_last, int32 minSamplesPerBin, str binLength,
      int32 offset, int32 n_samples, int32 reserved, str interval,
      str consolidator
  A str is an int32 byte count followed by that many bytes (usually NUL
  terminated). All integers are little-endian.
- <uuid>-<interval>.rra: n_samples int32 or double values in physical slot
  order, no header. Slot `offset` holds the sample taken at t_last.
  Unfilled slots hold 0x7fffffff (integer) or NaN (float).
- interchange (.csv): one "<timestamp>,<value>" row per sample, floats with
  3 decimals, no header.
"""

import bisect
import dataclasses
import enum
import math
import os
import shutil
import struct
import sys
import tempfile
from typing import Any, Optional, TextIO

SCHEMA_TAG_BYTES = b"hcb_rrd_09082011A"
PLACEHOLDER_DEVICE_ID = "placeholder"
INTEGER_SAMPLE_TYPE = "integer"

INT_SENTINEL = 0x7FFFFFFF
INT32_MIN = -0x80000000
INT32_MAX = 0x7FFFFFFF


class RraFormatError(ValueError):
    pass


class FormatMismatch(RraFormatError):
    pass


class Truncated(RraFormatError):
    pass


class ShortRead(RraFormatError):
    pass


class SubsetOutOfRange(IndexError):
    pass


class SampleKind(enum.Enum):
    INTEGER = "integer"
    FLOAT = "float"

    @classmethod
    def from_label(cls, label: str) -> "SampleKind":
        return cls.INTEGER if label == INTEGER_SAMPLE_TYPE else cls.FLOAT

    @property
    def struct_code(self) -> str:
        return "i" if self is SampleKind.INTEGER else "d"

    @property
    def width(self) -> int:
        return 4 if self is SampleKind.INTEGER else 8

    @property
    def sentinel(self) -> Any:
        return INT_SENTINEL if self is SampleKind.INTEGER else math.nan

    def is_sentinel(self, value: Any) -> bool:
        if self is SampleKind.INTEGER:
            return value == INT_SENTINEL
        return isinstance(value, float) and math.isnan(value)

    def parse(self, text: str) -> Optional[Any]:
        text = text.strip()
        if not text:
            return None
        if self is SampleKind.INTEGER:
            try:
                return int(text)
            except ValueError:
                pass
            # "%d" semantics: keep the integer part of a fixed-point literal
            try:
                as_float = float(text)
            except ValueError:
                return None
            return int(as_float) if math.isfinite(as_float) else None
        try:
            return float(text)
        except ValueError:
            return None

    def format(self, value: Any) -> str:
        if self is SampleKind.INTEGER:
            return str(int(value))
        return f"{float(value):.3f}"


@dataclasses.dataclass
class SubsetRecord:
    t_prev: int
    t_last: int
    min_samples_per_bin: int
    bin_length: str
    offset: int
    n_samples: int
    interval: str
    consolidator: str
    reserved: tuple[int, int, int] = (0, 0, 0)
    value: float = 0.0
    divider: float = 0.0
    reserved_tail: int = 0
    next: Optional["SubsetRecord"] = dataclasses.field(default=None, repr=False, compare=False)

    @property
    def sample_interval(self) -> int:
        return self.t_last - self.t_prev

    def has_valid_geometry(self) -> bool:
        return self.n_samples > 0 and 0 <= self.offset < self.n_samples and self.sample_interval > 0


@dataclasses.dataclass
class DeviceRecord:
    device_id: str
    device_var: str
    device_svc: str
    sample_type: str
    subsets: list[SubsetRecord] = dataclasses.field(default_factory=list)
    device_name: Optional[str] = None
    corrupted: bool = False
    corruption: str = ""
    source: str = ""

    @property
    def kind(self) -> SampleKind:
        return SampleKind.from_label(self.sample_type)

    @property
    def provisioned(self) -> bool:
        return self.device_id != PLACEHOLDER_DEVICE_ID

    @property
    def n_sets(self) -> int:
        return len(self.subsets)

    def subset(self, index: int) -> SubsetRecord:
        if not 0 <= index < len(self.subsets):
            raise SubsetOutOfRange(f"Subset {index} out of range 0..{len(self.subsets) - 1} for {self.device_id!r}")
        return self.subsets[index]

    def dump(self, out: Optional[TextIO] = None) -> None:
        stream = out if out is not None else sys.stdout
        stream.write(f"schema file     : {self.source}\n")
        stream.write(f"deviceUuid      : {self.device_id}\n")
        stream.write(f"deviceVar       : {self.device_var}\n")
        stream.write(f"device_name     : {self.device_name if self.device_name is not None else '(unresolved)'}\n")
        stream.write(f"deviceSvc       : {self.device_svc}\n")
        stream.write(f"sampleType      : {self.sample_type} ({self.kind.value})\n")
        stream.write(f"nr of subsets   : {self.n_sets}\n")
        if self.corrupted:
            stream.write(f"corrupted tail  : {self.corruption}\n")
        for idx, subset in enumerate(self.subsets):
            stream.write(f"  [{idx}] interval={subset.interval} binLength={subset.bin_length} "
                         f"consolidator={subset.consolidator}\n")
            if self.kind is SampleKind.INTEGER:
                stream.write(f"      reserved={list(subset.reserved)}\n")
            else:
                stream.write(f"      value={subset.value:.3f} divider={subset.divider:.3f}\n")
            stream.write(
                f"      t_prev={subset.t_prev} t_last={subset.t_last} step={subset.sample_interval} "
                f"minSamplesPerBin={subset.min_samples_per_bin}\n"
            )
            stream.write(
                f"      offset={subset.offset} n_samples={subset.n_samples} reserved={subset.reserved_tail} "
                f"next={'yes' if subset.next is not None else 'none'}\n"
            )


def _ensure_available(data: bytes, offset: int, size: int, what: str) -> None:
    if size < 0:
        raise Truncated(f"Negative length {size} declared for {what} at offset {offset}")
    if offset + size > len(data):
        raise Truncated(f"Unexpected EOF while reading {what} at offset {offset}")


def _read_i32(data: bytes, offset: int, what: str) -> tuple[int, int]:
    _ensure_available(data, offset, 4, what)
    return struct.unpack_from("<i", data, offset)[0], offset + 4


def _read_f64(data: bytes, offset: int, what: str) -> tuple[float, int]:
    _ensure_available(data, offset, 8, what)
    return struct.unpack_from("<d", data, offset)[0], offset + 8


def _read_string(data: bytes, offset: int, what: str) -> tuple[str, int]:
    length, offset = _read_i32(data, offset, f"{what} length")
    _ensure_available(data, offset, length, what)
    raw = data[offset:offset + length].split(b"\x00", 1)[0]
    return raw.decode("utf-8", errors="replace"), offset + length


def _read_subset(data: bytes, offset: int, kind: SampleKind) -> tuple[SubsetRecord, int]:
    reserved = (0, 0, 0)
    value = 0.0
    divider = 0.0
    if kind is SampleKind.INTEGER:
        r0, offset = _read_i32(data, offset, "reserved field 0")
        r1, offset = _read_i32(data, offset, "reserved field 1")
        r2, offset = _read_i32(data, offset, "reserved field 2")
        reserved = (r0, r1, r2)
    else:
        value, offset = _read_f64(data, offset, "scale value")
        divider, offset = _read_f64(data, offset, "scale divider")
    t_prev, offset = _read_i32(data, offset, "t_prev")
    t_last, offset = _read_i32(data, offset, "t_last")
    min_samples, offset = _read_i32(data, offset, "minSamplesPerBin")
    bin_length, offset = _read_string(data, offset, "binLength")
    ring_offset, offset = _read_i32(data, offset, "file offset")
    n_samples, offset = _read_i32(data, offset, "n_samples")
    reserved_tail, offset = _read_i32(data, offset, "reserved field 3")
    interval, offset = _read_string(data, offset, "interval")
    consolidator, offset = _read_string(data, offset, "consolidator")
    subset = SubsetRecord(
        t_prev=t_prev,
        t_last=t_last,
        min_samples_per_bin=min_samples,
        bin_length=bin_length,
        offset=ring_offset,
        n_samples=n_samples,
        interval=interval,
        consolidator=consolidator,
        reserved=reserved,
        value=value,
        divider=divider,
        reserved_tail=reserved_tail,
    )
    return subset, offset


def decode_schema(data: bytes, source: str = "<bytes>") -> DeviceRecord:
    """Decode a schema file.

    Raises FormatMismatch for a foreign tag and Truncated when the device
    header is cut short. A short subset block is not an error: decoding stops
    after the last complete subset and the record is flagged as corrupted.
    """
    tag = data[:len(SCHEMA_TAG_BYTES)]
    if tag != SCHEMA_TAG_BYTES:
        raise FormatMismatch(f"Invalid schema tag {tag!r} in {source!r}")
    offset = len(SCHEMA_TAG_BYTES)
    device_id, offset = _read_string(data, offset, "deviceUuid")
    device_var, offset = _read_string(data, offset, "deviceVar")
    device_svc, offset = _read_string(data, offset, "deviceSvc")
    sample_type, offset = _read_string(data, offset, "sampleType")
    record = DeviceRecord(device_id, device_var, device_svc, sample_type, source=source)

    # uuid stays "placeholder" until the meter adapter has been seen
    if not record.provisioned:
        return record

    kind = record.kind
    while offset < len(data):
        try:
            subset, offset = _read_subset(data, offset, kind)
        except Truncated as exc:
            record.corrupted = True
            record.corruption = f"subset {len(record.subsets)}: {exc}"
            break
        if record.subsets:
            record.subsets[-1].next = subset
        record.subsets.append(subset)
    return record


def read_schema_file(path: str) -> DeviceRecord:
    with open(path, "rb") as f:
        raw = f.read()
    return decode_schema(raw, source=path)


def _encode_string(text: str) -> bytes:
    raw = text.encode("utf-8") + b"\x00"
    return struct.pack("<i", len(raw)) + raw


def encode_schema(record: DeviceRecord) -> bytes:
    parts = [
        SCHEMA_TAG_BYTES,
        _encode_string(record.device_id),
        _encode_string(record.device_var),
        _encode_string(record.device_svc),
        _encode_string(record.sample_type),
    ]
    if not record.provisioned:
        return b"".join(parts)
    kind = record.kind
    for subset in record.subsets:
        if kind is SampleKind.INTEGER:
            parts.append(struct.pack("<3i", *subset.reserved))
        else:
            parts.append(struct.pack("<2d", subset.value, subset.divider))
        parts.append(struct.pack("<3i", subset.t_prev, subset.t_last, subset.min_samples_per_bin))
        parts.append(_encode_string(subset.bin_length))
        parts.append(struct.pack("<3i", subset.offset, subset.n_samples, subset.reserved_tail))
        parts.append(_encode_string(subset.interval))
        parts.append(_encode_string(subset.consolidator))
    return b"".join(parts)


def ring_times(subset: SubsetRecord) -> list[int]:
    """Timestamp of every physical slot.

    Slot `offset` is t_last and each step back (wrapping from slot 0 to slot
    n_samples-1) is one interval older, so the list is ascending once rotated
    to start at slot offset+1.
    """
    if not subset.has_valid_geometry():
        raise ValueError(
            f"Invalid ring geometry: offset={subset.offset} n_samples={subset.n_samples} "
            f"interval={subset.sample_interval}"
        )
    n = subset.n_samples
    step = subset.sample_interval
    return [subset.t_last - ((subset.offset - slot) % n) * step for slot in range(n)]


def importable_window(subset: SubsetRecord, times: list[int]) -> tuple[int, int]:
    n = subset.n_samples
    return times[(subset.offset + 1) % n], times[subset.offset]


def rotation_point(arr: list[int]) -> int:
    """Index of the smallest element of an ascending array rotated once."""
    if not arr:
        raise ValueError("rotation_point of an empty sequence")
    lo = 0
    hi = len(arr) - 1
    while lo < hi:
        mid = (lo + hi) // 2
        if arr[mid] > arr[hi]:
            lo = mid + 1
        elif arr[mid] < arr[hi]:
            hi = mid
        else:
            # repeated values: the drop may sit on either side of mid
            if arr[hi - 1] > arr[hi]:
                return hi
            hi -= 1
    return lo


def rotated_search(arr: list[int], key: int) -> int:
    if not arr:
        return -1
    pivot = rotation_point(arr)
    if arr[pivot] <= key <= arr[-1]:
        lo, hi = pivot, len(arr)
    else:
        lo, hi = 0, pivot
    idx = bisect.bisect_left(arr, key, lo, hi)
    if idx < hi and arr[idx] == key:
        return idx
    return -1


@dataclasses.dataclass
class InterchangeSeries:
    times: list[int]
    values: list[Any]
    skipped_rows: int = 0

    def __len__(self) -> int:
        return len(self.times)

    def span(self) -> Optional[tuple[int, int]]:
        if not self.times:
            return None
        start = rotation_point(self.times)
        return self.times[start], self.times[start - 1]


def _parse_interchange_row(line: str, kind: SampleKind) -> Optional[tuple[int, Any]]:
    ts_text, sep, value_text = line.partition(",")
    if not sep:
        return None
    try:
        timestamp = int(ts_text.strip())
    except ValueError:
        return None
    value = kind.parse(value_text)
    if value is None:
        return None
    return timestamp, value


def read_interchange(path: str, kind: SampleKind, cutoff: Optional[int] = None) -> InterchangeSeries:
    series = InterchangeSeries([], [])
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for line in f:
            if not line.strip():
                continue
            row = _parse_interchange_row(line, kind)
            if row is None:
                series.skipped_rows += 1
                continue
            timestamp, value = row
            if cutoff is not None and timestamp > cutoff:
                continue
            series.times.append(timestamp)
            series.values.append(value)
    return series


def atomic_write_bytes(path: str, payload: bytes, prefix: str) -> None:
    directory = os.path.dirname(os.path.abspath(path))
    temp_path = ""
    try:
        with tempfile.NamedTemporaryFile(prefix=prefix, suffix=".tmp", dir=directory, delete=False) as tmp:
            temp_path = tmp.name
            tmp.write(payload)
            tmp.flush()
            os.fsync(tmp.fileno())
        if os.path.exists(path):
            shutil.copymode(path, temp_path)
        os.replace(temp_path, path)
    except BaseException:
        if temp_path and os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


def read_ring_file(path: str, n_samples: int, kind: SampleKind) -> list[Any]:
    size = n_samples * kind.width
    with open(path, "rb") as f:
        # n_samples comes from the schema file and may be garbage
        available = os.fstat(f.fileno()).st_size
        if available < size:
            raise ShortRead(
                f"Ring buffer {path!r} holds {available // kind.width} of {n_samples} {kind.value} samples"
            )
        raw = f.read(size)
    if len(raw) < size:
        raise ShortRead(
            f"Ring buffer {path!r} holds {len(raw) // kind.width} of {n_samples} {kind.value} samples"
        )
    return list(struct.unpack(f"<{n_samples}{kind.struct_code}", raw))


def pack_ring_values(values: list[Any], kind: SampleKind) -> bytes:
    if kind is SampleKind.INTEGER:
        ints = [int(v) for v in values]
        for slot, v in enumerate(ints):
            if not INT32_MIN <= v <= INT32_MAX:
                raise ValueError(f"Slot {slot} value {v} does not fit a 32-bit integer")
        return struct.pack(f"<{len(ints)}i", *ints)
    return struct.pack(f"<{len(values)}d", *(float(v) for v in values))


def write_ring_file(path: str, values: list[Any], kind: SampleKind, n_samples: Optional[int] = None) -> None:
    if n_samples is not None and len(values) != n_samples:
        raise ValueError(f"Ring buffer {path!r} needs {n_samples} values, got {len(values)}")
    atomic_write_bytes(path, pack_ring_values(values, kind), prefix=".rra_")


def _same_value(a: Any, b: Any) -> bool:
    if isinstance(a, float) and isinstance(b, float) and math.isnan(a) and math.isnan(b):
        return True
    return a == b


def merge_ring_values(
    subset: SubsetRecord,
    ring_time: list[int],
    ring_values: list[Any],
    interchange: InterchangeSeries,
) -> list[Any]:
    """New physical-order contents of one ring.

    Only interchange samples inside the span the ring can hold are candidates,
    and they are matched to slots by equal timestamp. Slots without a match
    keep their current value, sentinels included.
    """
    n = subset.n_samples
    if len(ring_time) != n or len(ring_values) != n:
        raise ValueError(f"Ring needs {n} times and values, got {len(ring_time)} and {len(ring_values)}")
    merged = list(ring_values)
    t_min, t_max = importable_window(subset, ring_time)

    candidate_times: list[int] = []
    candidate_values: list[Any] = []
    for timestamp, value in zip(interchange.times, interchange.values):
        if t_min <= timestamp <= t_max:
            candidate_times.append(timestamp)
            candidate_values.append(value)
    if not candidate_times:
        return merged

    for slot, timestamp in enumerate(ring_time):
        if not t_min <= timestamp <= t_max:
            continue
        idx = rotated_search(candidate_times, timestamp)
        if idx >= 0:
            merged[slot] = candidate_values[idx]
    return merged


@dataclasses.dataclass(frozen=True)
class MergeResult:
    slots: int
    candidates: int
    changed: int
    skipped_rows: int


def merge_subset(
    record: DeviceRecord,
    index: int,
    ring_path: str,
    interchange_path: str,
    cutoff: Optional[int] = None,
) -> MergeResult:
    subset = record.subset(index)
    kind = record.kind
    current = read_ring_file(ring_path, subset.n_samples, kind)
    times = ring_times(subset)
    series = read_interchange(interchange_path, kind, cutoff)
    merged = merge_ring_values(subset, times, current, series)
    write_ring_file(ring_path, merged, kind, subset.n_samples)

    t_min, t_max = importable_window(subset, times)
    candidates = sum(1 for t in series.times if t_min <= t <= t_max)
    changed = sum(1 for old, new in zip(current, merged) if not _same_value(old, new))
    return MergeResult(subset.n_samples, candidates, changed, series.skipped_rows)


def export_rows(subset: SubsetRecord, ring_time: list[int], ring_values: list[Any], kind: SampleKind) -> list[str]:
    if len(ring_time) != subset.n_samples or len(ring_values) != subset.n_samples:
        raise ValueError(f"Ring needs {subset.n_samples} times and values")
    return [
        f"{timestamp},{kind.format(value)}"
        for timestamp, value in zip(ring_time, ring_values)
        if not kind.is_sentinel(value)
    ]


def export_subset(record: DeviceRecord, index: int, ring_path: str, interchange_path: str) -> int:
    subset = record.subset(index)
    kind = record.kind
    values = read_ring_file(ring_path, subset.n_samples, kind)
    times = ring_times(subset)
    rows = export_rows(subset, times, values, kind)
    payload = "".join(f"{row}\n" for row in rows).encode("utf-8")
    atomic_write_bytes(interchange_path, payload, prefix=".csv_")
    return len(rows)
