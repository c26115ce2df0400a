#!/usr/bin/env python3
"""Simulate two nearby devices exchanging help requests over the mesh relay.

Both relays share one directory as their medium, exactly as two processes
on a shared volume would. Device ``alpha`` stores a few help requests;
device ``bravo`` discovers it, asks for its records and prints what it
receives.

Usage
-----
::

    python scripts/mesh_demo.py
    python scripts/mesh_demo.py --medium /tmp/laban-mesh --seconds 10 -v

Options::

    --medium DIR        Shared medium directory (default: a temporary directory)
    --seconds N         How long to run (default: 6)
    --distance M        Meters between the two devices (default: 120)
    --verbose, -v       Enable debug logging
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import tempfile
from pathlib import Path

# Allow running from repo root without installing the package.
_src = Path(__file__).resolve().parent.parent / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from pylaban import FileStore, LocalMeshRelay, MeshProfile, SharedRecord  # noqa: E402

_LOG = logging.getLogger("mesh_demo")

# Manila city hall; roughly 111 km per degree of latitude.
_ORIGIN = (14.5995, 120.9842)
_METERS_PER_DEGREE = 111_195.0


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Two simulated devices sharing a mesh medium directory.")
    parser.add_argument("--medium", help="Shared medium directory (default: temporary directory)")
    parser.add_argument("--seconds", type=float, default=6.0, help="How long to run")
    parser.add_argument("--distance", type=float, default=120.0, help="Meters between the two devices")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser.parse_args()


async def run(medium_dir: Path, seconds: float, distance: float) -> int:
    # Fast intervals so something happens within a few seconds.
    profile = MeshProfile(presence_interval=1.0, discovery_interval=0.7, poll_interval=0.5)
    alpha = LocalMeshRelay(FileStore(medium_dir), device_id="alpha", profile=profile)
    bravo = LocalMeshRelay(FileStore(medium_dir), device_id="bravo", profile=profile)

    received: list[SharedRecord] = []

    def on_records(records: list[SharedRecord]) -> None:
        for record in records:
            print(f"bravo <- {record.id} from {record.device_id}: {record.message}")
        received.extend(records)

    bravo.add_listener(on_records)

    lat, lon = _ORIGIN
    alpha.start({"latitude": lat, "longitude": lon})
    bravo.start({"latitude": lat + distance / _METERS_PER_DEGREE, "longitude": lon})

    for n, message in enumerate(("trapped on roof", "need insulin", "road to shelter flooded"), start=1):
        alpha.store_local_request(
            {
                "id": f"demo-{n}",
                "message": message,
                "role": "resident",
                "latitude": lat + 0.0002 * n,
                "longitude": lon,
                "status": "open",
            }
        )

    try:
        await asyncio.sleep(seconds)
    finally:
        alpha.stop()
        bravo.stop()

    _LOG.info("Peers seen by bravo at shutdown: %s", [p.device_id for p in bravo.peers])
    print(f"bravo received {len(received)} record(s) via {medium_dir}")
    return 0 if received else 1


def main() -> None:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.medium:
        code = asyncio.run(run(Path(args.medium), args.seconds, args.distance))
    else:
        with tempfile.TemporaryDirectory(prefix="laban-mesh-") as tmp:
            code = asyncio.run(run(Path(tmp), args.seconds, args.distance))
    raise SystemExit(code)


if __name__ == "__main__":
    main()
