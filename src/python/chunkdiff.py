#!/usr/bin/env python3
"""
Fixed-Chunk Binary Differencing

The baseline file is cut into fixed-size chunks of C bytes and each chunk
is fingerprinted with a 128-bit xxh3 hash.  The target file is then scanned
one byte at a time through a trailing window of C bytes; every full window
is looked up among the baseline fingerprints.  On a miss the window slides
by one byte and the evicted byte is kept as a "problem byte".  On a hit the
baseline chunk index is recorded together with the problem bytes that
preceded it, and scanning restarts with an empty window.

Baseline chunks that never matched are filled in afterwards as absent
entries, so the resulting delta map covers every baseline index.

Usage:
  python chunkdiff.py diff          <baseline> <target> [chunk_size]
  python chunkdiff.py fingerprints  <baseline> [chunk_size]
"""

import argparse
import os
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

import xxhash


DEFAULT_CHUNK_SIZE = 3
HASH_SEED = 0
READ_BLOCK = 1 << 16          # bytes per read(); the scan still steps per byte
DUPLICATE_POLICIES = ('first', 'last')


# ============================================================================
# Errors
# ============================================================================

class ChunkDiffError(Exception):
    """Base class for failures of the fingerprint and delta passes."""


class ChunkIOError(ChunkDiffError):
    """A file could not be opened or a read failed mid-scan."""

    def __init__(self, path: str, message: str):
        super().__init__(f"{path}: {message}")
        self.path = path
        self.message = message


class InsufficientDataError(ChunkDiffError, ValueError):
    """File is too short to hold one full chunk plus one more byte."""

    def __init__(self, path: str, size: int, chunk_size: int):
        super().__init__(
            f"{path} must contain at least 2 chunks "
            f"({size} bytes, chunk size {chunk_size})")
        self.path = path
        self.size = size
        self.chunk_size = chunk_size


# ============================================================================
# Data model
# ============================================================================

@dataclass
class DiffOptions:
    """Options for the fingerprint and alignment passes.

    duplicates selects which baseline index a shared fingerprint resolves
    to: 'first' keeps the lowest index, 'last' lets later chunks overwrite.
    """
    chunk_size: int = DEFAULT_CHUNK_SIZE
    duplicates: str = 'first'
    verbose: bool = False


@dataclass(frozen=True)
class FingerprintList:
    """Ordered fingerprints of a baseline file, one per chunk.

    The final chunk covers only last_chunk_len bytes, which is shorter than
    chunk_size whenever source_size is not a multiple of it.  Chunk offsets
    elsewhere still assume every chunk spans chunk_size bytes.
    """
    chunk_size: int
    hashes: tuple = field(default_factory=tuple)
    source_size: int = 0
    last_chunk_len: int = 0

    def __len__(self):
        return len(self.hashes)

    def __getitem__(self, i):
        return self.hashes[i]

    def __iter__(self):
        return iter(self.hashes)


@dataclass
class Chunk:
    """Recovered state of one baseline chunk within the target."""
    start: int
    end: int
    is_present: bool
    problem_bytes: bytes = b""

    @classmethod
    def at(cls, index: int, chunk_size: int, is_present: bool,
           problem_bytes: bytes = b"") -> 'Chunk':
        start = index * chunk_size
        return cls(start=start, end=start + chunk_size,
                   is_present=is_present, problem_bytes=problem_bytes)

    def clamped_end(self, size: int) -> int:
        """End offset limited to a file of `size` bytes."""
        return min(self.end, size)

    def __repr__(self):
        state = "PRESENT" if self.is_present else "ABSENT"
        if len(self.problem_bytes) <= 20:
            extra = f", {self.problem_bytes!r}" if self.problem_bytes else ""
        else:
            extra = f", problem={len(self.problem_bytes)}"
        return f"{state}({self.start}:{self.end}{extra})"


DeltaMap = Dict[int, Chunk]
PositionIndex = Dict[int, int]


# ============================================================================
# Hashing primitive
# ============================================================================

def fingerprint(data: bytes) -> int:
    """128-bit xxh3 fingerprint of `data` with the fixed seed."""
    return xxhash.xxh3_128(data, seed=HASH_SEED).intdigest()


def position_index(fingerprints, duplicates: str = 'first') -> PositionIndex:
    """Map each fingerprint to the baseline index it resolves to.

    With 'first' a repeated fingerprint keeps its lowest index; with 'last'
    every later occurrence overwrites the earlier one.
    """
    if duplicates not in DUPLICATE_POLICIES:
        raise ValueError(f"unknown duplicate policy: {duplicates!r}")
    index: PositionIndex = {}
    for i, fp in enumerate(fingerprints):
        if duplicates == 'first' and fp in index:
            continue
        index[fp] = i
    return index


# ============================================================================
# File access
# ============================================================================

def _check_chunk_size(chunk_size: int) -> None:
    if chunk_size < 1:
        raise ValueError(f"chunk size must be >= 1, got {chunk_size}")


@contextmanager
def _open_scan(path: str, chunk_size: int):
    """Open `path` for a sequential scan after checking its size.

    Yields (file, size).  The file is closed on every exit path.
    """
    try:
        f = open(path, 'rb')
    except OSError as e:
        raise ChunkIOError(path, e.strerror or str(e)) from e
    with f:
        try:
            size = os.fstat(f.fileno()).st_size
        except OSError as e:
            raise ChunkIOError(path, e.strerror or str(e)) from e
        # size - 1 < C also rejects empty files
        if size - 1 < chunk_size:
            raise InsufficientDataError(path, size, chunk_size)
        yield f, size


def _iter_bytes(f, path: str, sink: Optional[bytearray] = None) -> Iterator[int]:
    """Yield the bytes of an open file one at a time.

    Every block read is also appended to `sink` when one is given.
    """
    while True:
        try:
            block = f.read(READ_BLOCK)
        except OSError as e:
            raise ChunkIOError(path, e.strerror or str(e)) from e
        if not block:
            return
        if sink is not None:
            sink += block
        yield from block


# ============================================================================
# Fingerprinter
# ============================================================================

def build_fingerprints(path: str, chunk_size: int = DEFAULT_CHUNK_SIZE,
                       opts: Optional[DiffOptions] = None) -> FingerprintList:
    """Fingerprint the baseline at `path` in consecutive chunk_size pieces.

    A trailing partial chunk gets its own fingerprint over the bytes that
    remain; it is neither padded nor dropped.
    """
    verbose = False
    if opts is not None:
        chunk_size, verbose = opts.chunk_size, opts.verbose
    _check_chunk_size(chunk_size)

    hashes: List[int] = []
    buf = bytearray()
    with _open_scan(path, chunk_size) as (f, size):
        for b in _iter_bytes(f, path):
            buf.append(b)
            if len(buf) == chunk_size:
                hashes.append(fingerprint(bytes(buf)))
                buf.clear()

    last_len = chunk_size
    if buf:
        hashes.append(fingerprint(bytes(buf)))
        last_len = len(buf)

    if verbose:
        print(f"fingerprint: {path} ({size:,} bytes), chunk_size={chunk_size}, "
              f"{len(hashes):,} chunks, last chunk {last_len} bytes",
              file=sys.stderr)

    return FingerprintList(chunk_size=chunk_size, hashes=tuple(hashes),
                           source_size=size, last_chunk_len=last_len)


# ============================================================================
# Aligner
#
# The window is re-hashed in full after every one-byte slide; there is no
# rolling update.  Work is O(|target| * C) in the worst case.
# ============================================================================

def align(fingerprints: FingerprintList, path: str,
          opts: Optional[DiffOptions] = None,
          sink: Optional[bytearray] = None) -> DeltaMap:
    """Scan the target at `path` and record every recovered baseline chunk.

    The returned map holds only matched indices.  A later hit on the same
    baseline index overwrites the earlier entry.  Bytes still pending in
    the window when the target ends are dropped.  The target bytes read by
    the scan are appended to `sink` if given.
    """
    if opts is None:
        opts = DiffOptions(chunk_size=fingerprints.chunk_size)
    C = fingerprints.chunk_size
    _check_chunk_size(C)
    positions = position_index(fingerprints, opts.duplicates)

    delta: DeltaMap = {}
    window = bytearray()
    problem = bytearray()
    tested = 0
    hits = 0

    with _open_scan(path, C) as (f, size):
        for b in _iter_bytes(f, path, sink):
            window.append(b)
            if len(window) < C:
                continue
            # previous test missed: slide one byte
            if len(window) > C:
                problem.append(window[0])
                del window[0]

            tested += 1
            p = positions.get(fingerprint(bytes(window)))
            if p is None:
                continue
            hits += 1
            delta[p] = Chunk.at(p, C, True, bytes(problem))
            window.clear()
            problem.clear()

    if opts.verbose:
        print(f"align: {path} ({size:,} bytes), {tested:,} windows tested, "
              f"{hits:,} hits, {len(delta):,}/{len(fingerprints):,} chunks found",
              file=sys.stderr)
        if window or problem:
            print(f"  tail: {len(problem) + len(window)} unmatched bytes dropped",
                  file=sys.stderr)

    return delta


# ============================================================================
# Gap Filler
# ============================================================================

def fill_gaps(delta: DeltaMap, count: int, chunk_size: int) -> DeltaMap:
    """Return a new map ordered by index with an absent entry for every
    index in range(count) that `delta` lacks.  `delta` is left untouched.
    """
    filled = dict(delta)
    for i in range(count):
        if i not in filled:
            filled[i] = Chunk.at(i, chunk_size, False)
    return {i: filled[i] for i in sorted(filled)}


def compute_delta(fingerprints: FingerprintList, path: str,
                  opts: Optional[DiffOptions] = None,
                  sink: Optional[bytearray] = None) -> DeltaMap:
    """Delta of the target at `path` against a baseline's fingerprints.

    The result has exactly one entry per baseline chunk, keyed by index.
    Diffing a file against itself marks every chunk present only when the
    baseline chunks are distinct: under either duplicate policy a repeated
    chunk resolves to a single index and its twins stay absent.  `sink`
    receives the target bytes exactly as scanned.
    """
    delta = align(fingerprints, path, opts=opts, sink=sink)
    return fill_gaps(delta, len(fingerprints), fingerprints.chunk_size)


# ============================================================================
# Reporting
# ============================================================================

def render_delta(delta: DeltaMap, target: bytes, out=None) -> int:
    """Print problem-byte spans next to the target bytes at each chunk.

    Returns the number of chunks printed.
    """
    if out is None:
        out = sys.stdout
    count = 0
    for i in sorted(delta):
        chunk = delta[i]
        if not chunk.problem_bytes:
            continue
        count += 1
        span = target[chunk.start:chunk.clamped_end(len(target))]
        print(f"\n+{chunk.problem_bytes.decode('utf-8', 'replace')}+", file=out)
        print(f"\n-{span.decode('utf-8', 'replace')}-", file=out)
    if count == 0:
        print("\nNo change detected!.", file=out)
    return count


def delta_summary(delta: DeltaMap) -> dict:
    """Return summary statistics for a delta map."""
    present = [c for c in delta.values() if c.is_present]
    with_problems = [c for c in present if c.problem_bytes]
    return {
        'num_chunks': len(delta),
        'num_present': len(present),
        'num_absent': len(delta) - len(present),
        'num_with_problems': len(with_problems),
        'problem_bytes': sum(len(c.problem_bytes) for c in with_problems),
    }


# ============================================================================
# CLI
# ============================================================================

def _positive_int(s: str) -> int:
    """argparse type for a chunk size."""
    try:
        n = int(s)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid chunk size: {s!r}")
    if n < 1:
        raise argparse.ArgumentTypeError("chunk size must be >= 1")
    return n


def cmd_diff(args):
    opts = DiffOptions(chunk_size=args.chunk_size,
                       duplicates=args.duplicates,
                       verbose=args.verbose)
    # spans are rendered from the bytes the scan itself read
    target = bytearray()
    t0 = time.time()
    try:
        fps = build_fingerprints(args.baseline, opts=opts)
        delta = compute_delta(fps, args.target, opts=opts, sink=target)
    except ChunkDiffError as e:
        raise SystemExit(f"error: {e}")
    elapsed = time.time() - t0

    render_delta(delta, target)
    stats = delta_summary(delta)
    print()
    print(f"Baseline:     {args.baseline} ({fps.source_size:,} bytes)")
    print(f"Target:       {args.target} ({len(target):,} bytes)")
    print(f"Chunk size:   {args.chunk_size}")
    print(f"Chunks:       {stats['num_present']} present, "
          f"{stats['num_absent']} absent of {stats['num_chunks']}")
    print(f"Problems:     {stats['num_with_problems']} chunks "
          f"({stats['problem_bytes']:,} bytes)")
    print(f"Time:         {elapsed:.3f}s")


def cmd_fingerprints(args):
    try:
        fps = build_fingerprints(args.baseline, args.chunk_size)
    except ChunkDiffError as e:
        raise SystemExit(f"error: {e}")
    for i, fp in enumerate(fps):
        print(f"{i:8d}  {fp:032x}")
    print(f"Chunks:       {len(fps)} (last chunk {fps.last_chunk_len} bytes)")


def main(argv=None):
    ap = argparse.ArgumentParser(
        description='Fixed-chunk binary differencing with byte-wise resync')
    sub = ap.add_subparsers(dest='command')

    # diff
    dif = sub.add_parser('diff', help='Compute and print the chunk delta')
    dif.add_argument('baseline', help='Baseline file')
    dif.add_argument('target', help='Target file')
    dif.add_argument('chunk_size', nargs='?', type=_positive_int,
                     default=DEFAULT_CHUNK_SIZE,
                     help=f'Chunk size in bytes (default: {DEFAULT_CHUNK_SIZE})')
    dif.add_argument('--duplicates', choices=list(DUPLICATE_POLICIES),
                     default='first',
                     help='Index a repeated baseline chunk resolves to (default: first)')
    dif.add_argument('--verbose', action='store_true',
                     help='Print diagnostic messages to stderr')
    dif.set_defaults(func=cmd_diff)

    # fingerprints
    fpr = sub.add_parser('fingerprints', help='List baseline chunk fingerprints')
    fpr.add_argument('baseline', help='Baseline file')
    fpr.add_argument('chunk_size', nargs='?', type=_positive_int,
                     default=DEFAULT_CHUNK_SIZE,
                     help=f'Chunk size in bytes (default: {DEFAULT_CHUNK_SIZE})')
    fpr.set_defaults(func=cmd_fingerprints)

    args = ap.parse_args(argv)
    if args.command is None:
        ap.print_help()
        sys.exit(1)
    args.func(args)


# ============================================================================

if __name__ == '__main__':
    main()
