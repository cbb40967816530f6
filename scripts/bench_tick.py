"""Time the per-tick hot path of the broadcast scheduler.

Runs the sandbox engine through step, snapshot, diff, encode and compress for
a number of ticks and prints the mean and worst time per phase, together with
how often the delta was rejected in favour of a keyframe.

Examples
--------
Benchmark the default 300x450 grid for ten seconds worth of ticks::

    python scripts/bench_tick.py --ticks 300

A smaller grid at a higher compression level::

    python scripts/bench_tick.py --width 120 --height 180 --level 6
"""

from __future__ import annotations

import argparse
import sys
import time
import zlib
from collections import defaultdict
from typing import Dict, Iterable, List

from gridcast.runtime.grid_adapter import capture_frame
from gridcast.runtime.sandbox import SandboxEngine
from gridcast.sync.codec import encode_delta, encode_keyframe
from gridcast.sync.frames import diff_frames


PHASES = ("step", "snapshot", "diff", "encode", "compress")


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Grid broadcast tick benchmark")
    parser.add_argument("--width", type=int, default=300, help="grid width in cells")
    parser.add_argument("--height", type=int, default=450, help="grid height in cells")
    parser.add_argument("--ticks", type=int, default=300, help="number of ticks to run")
    parser.add_argument("--level", type=int, default=1, help="zlib compression level")
    parser.add_argument("--seed", type=int, default=0, help="sandbox random seed")
    return parser.parse_args(None if argv is None else list(argv))


def main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)
    if args.ticks <= 0:
        raise SystemExit("--ticks must be positive")
    engine = SandboxEngine(args.width, args.height, seed=args.seed)
    timings: Dict[str, List[float]] = defaultdict(list)
    previous = None
    keyframes = deltas = 0
    wire_bytes = 0

    for tick in range(1, args.ticks + 1):
        started = time.perf_counter()
        engine.step()
        timings["step"].append(time.perf_counter() - started)

        started = time.perf_counter()
        frame = capture_frame(engine, tick)
        timings["snapshot"].append(time.perf_counter() - started)

        started = time.perf_counter()
        changes = diff_frames(frame, previous)
        timings["diff"].append(time.perf_counter() - started)
        previous = frame

        started = time.perf_counter()
        payload = encode_delta(changes, engine.layout) if changes is not None else None
        if payload is None:
            payload = encode_keyframe(frame)
            keyframes += 1
        else:
            deltas += 1
        timings["encode"].append(time.perf_counter() - started)

        started = time.perf_counter()
        wire_bytes += len(zlib.compress(payload, args.level))
        timings["compress"].append(time.perf_counter() - started)

    print(f"{args.width}x{args.height} grid, {args.ticks} ticks, zlib level {args.level}")
    for phase in PHASES:
        samples = timings[phase]
        mean_ms = 1000 * sum(samples) / len(samples)
        worst_ms = 1000 * max(samples)
        print(f"  {phase:<9} mean {mean_ms:7.3f} ms   worst {worst_ms:7.3f} ms")
    print(f"  keyframes {keyframes}, deltas {deltas}, {wire_bytes / args.ticks / 1024:.1f} KB/tick on the wire")
    return 0


if __name__ == "__main__":
    sys.exit(main())
