"""Deterministic stand-in for OpenSCAD used by local runs and tests.

Accepts the same ``-D name=value -o <output> <template>`` arguments and writes
an ASCII STL prism sized from ``socketDiameter``.
"""

from __future__ import annotations

import argparse
import math
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Write a small but plausible mesh, or misbehave on request."""

    parser = argparse.ArgumentParser()
    parser.add_argument("-D", dest="defines", action="append", default=[])
    parser.add_argument("-o", dest="output", required=True)
    parser.add_argument("template")
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--sleep-seconds", type=float, default=0.0)
    parser.add_argument("--facets", type=int, default=12)
    args = parser.parse_args(argv)

    if args.sleep_seconds > 0:
        time.sleep(args.sleep_seconds)
    if args.exit_code != 0:
        print(f"ERROR: stub compiler failing with exit code {args.exit_code}", file=sys.stderr)
        return args.exit_code

    defines = dict(item.split("=", 1) for item in args.defines)
    radius = float(defines.get("socketDiameter", "10")) / 2
    output = Path(args.output)
    output.parent.mkdir(parents=True, exist_ok=True)
    stl = _render_stl(name=Path(args.template).stem, radius=radius, facets=args.facets)
    output.write_text(stl)
    print(f"stub compiler wrote {output}")
    return 0


def _render_stl(*, name: str, radius: float, facets: int) -> str:
    lines = [f"solid {name}"]
    for index in range(facets):
        a0 = 2 * math.pi * index / facets
        a1 = 2 * math.pi * (index + 1) / facets
        p0 = (radius * math.cos(a0), radius * math.sin(a0), 0.0)
        p1 = (radius * math.cos(a1), radius * math.sin(a1), 0.0)
        lines.extend(
            [
                "  facet normal 0 0 -1",
                "    outer loop",
                "      vertex 0 0 0",
                f"      vertex {p1[0]:.4f} {p1[1]:.4f} {p1[2]:.4f}",
                f"      vertex {p0[0]:.4f} {p0[1]:.4f} {p0[2]:.4f}",
                "    endloop",
                "  endfacet",
            ],
        )
    lines.append(f"endsolid {name}")
    return "\n".join(lines) + "\n"


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
