#!/usr/bin/env python3
"""
Memory-access trace records: parsing, lazy file reading, writing and a
deterministic synthetic workload generator.

One record per line, whitespace separated:
    <access_type> <address> <thread_id> <return_address>
Numeric fields are unsigned integers, decimal or 0x-prefixed hex.
"""
import logging
import random
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

logger = logging.getLogger(__name__)


class MalformedRecordError(ValueError):
    def __init__(self, message: str, line: str = "", line_number: Optional[int] = None):
        self.line = line
        self.line_number = line_number
        where = f"line {line_number}: " if line_number is not None else ""
        super().__init__(f"{where}{message}: {line!r}")


class TraceUnavailableError(OSError):
    pass


@dataclass(frozen=True)
class TraceRecord:
    access_type: str
    address: int
    thread_id: int
    return_address: int

    def to_line(self) -> str:
        return f"{self.access_type} {self.address} {self.thread_id} {self.return_address}"


DEC_DIGITS = frozenset("0123456789")
HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


def _parse_unsigned(token: str) -> int:
    if token[:2].lower() == "0x":
        digits, base, allowed = token[2:], 16, HEX_DIGITS
    else:
        digits, base, allowed = token, 10, DEC_DIGITS
    # int() alone would also accept signs and underscores
    if not digits or not set(digits) <= allowed:
        raise ValueError(token)
    return int(digits, base)


def parse_trace_line(line: str, line_number: Optional[int] = None) -> TraceRecord:
    parts = line.split()
    if len(parts) != 4:
        raise MalformedRecordError(f"expected 4 fields, got {len(parts)}", line, line_number)
    access_type, address, thread_id, return_address = parts
    try:
        return TraceRecord(
            access_type=access_type,
            address=_parse_unsigned(address),
            thread_id=_parse_unsigned(thread_id),
            return_address=_parse_unsigned(return_address),
        )
    except ValueError as e:
        raise MalformedRecordError(f"not an unsigned integer: {e}", line, line_number) from None


def read_trace(path: str) -> Iterator[str]:
    """
    Yield raw lines of a trace file lazily. Opening or reading failures are fatal
    and surface as TraceUnavailableError.
    """
    try:
        # undecodable bytes survive as surrogates and fail field parsing, so the line is skipped
        f = open(path, "r", errors="surrogateescape")
    except OSError as e:
        raise TraceUnavailableError(f"cannot open trace {path}: {e.strerror or e}") from e
    logger.info("Reading trace %s", path)
    with f:
        try:
            for line in f:
                yield line
        except OSError as e:
            raise TraceUnavailableError(f"cannot read trace {path}: {e}") from e


def write_trace(records: Iterable[TraceRecord], path: str) -> int:
    n = 0
    with open(path, "w") as f:
        for rec in records:
            f.write(rec.to_line() + "\n")
            n += 1
    return n


# ---------------- Workload ----------------
def generate_synthetic_trace(n: int, num_threads: int = 4, address_space_kb: int = 1024, line_size: int = 64,
                             seq_frac: float = 0.5, hot_frac: float = 0.3, write_ratio: float = 0.1,
                             seed: int = 42) -> Iterator[TraceRecord]:
    """
    Deterministic mix of sequential bursts, hot-region hits and uniform random
    line accesses. Each burst stays on one thread; other accesses pick a thread
    at random.
    """
    rnd = random.Random(seed)
    space_bytes = address_space_kb * 1024
    hot_space = max(line_size, int(0.1 * space_bytes))
    pc_base = 0x400000

    def record(addr, thread):
        op = "W" if rnd.random() < write_ratio else "R"
        return TraceRecord(op, addr, thread, pc_base + 4 * rnd.randrange(256))

    i = 0
    while i < n:
        mode = rnd.random()
        thread = rnd.randrange(num_threads)
        if mode < seq_frac:
            start = rnd.randrange(0, max(line_size, space_bytes - 64 * line_size), line_size)
            length = rnd.randint(8, 64)  # burst in lines
            for j in range(min(length, n - i)):
                yield record((start + j * line_size) % space_bytes, thread)
                i += 1
        elif mode < seq_frac + hot_frac:
            addr = rnd.randrange(0, max(1, hot_space // line_size)) * line_size
            yield record(addr, thread)
            i += 1
        else:
            addr = rnd.randrange(0, max(1, space_bytes // line_size)) * line_size
            yield record(addr, thread)
            i += 1
