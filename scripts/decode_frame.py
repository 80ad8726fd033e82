#!/usr/bin/env python3
"""Decode MeshCore frames given as hex and print the result as JSON.

Frames are read from the command line or, with ``-``, one per line from
stdin. ADVERT frames also get their application data decoded.

Examples::

    python scripts/decode_frame.py 020001020304
    mosquitto_sub -t 'meshcore/+/+/packets' | jq -r .raw | python scripts/decode_frame.py -
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

# Allow running from repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from meshdots.meshcore import decode_advert, decode_frame  # noqa: E402
from meshdots.models.frame import DecodeFailure  # noqa: E402


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Decode MeshCore frames from hex.",
    )
    parser.add_argument(
        "frames",
        nargs="+",
        help="Hex-encoded frames, or '-' to read one frame per line from stdin.",
    )
    parser.add_argument(
        "--compact",
        action="store_true",
        help="Print one JSON object per line.",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logs.",
    )
    return parser.parse_args()


def _describe(raw: str) -> dict[str, Any]:
    frame = decode_frame(raw)
    if isinstance(frame, DecodeFailure):
        return {"input": raw, "error": frame.reason}

    result: dict[str, Any] = {
        "input": raw,
        "route_type": frame.header.route_type.name,
        "payload_type": frame.header.payload_type,
        "version": frame.header.version,
        "frame": frame.model_dump(mode="json"),
    }
    if frame.header.is_advert:
        advert = decode_advert(frame.payload)
        if isinstance(advert, DecodeFailure):
            result["advert_error"] = advert.reason
        else:
            result["advert"] = advert.model_dump(mode="json")
            result["advert"]["device_type"] = advert.device_type
    return result


def _inputs(frames: list[str]) -> list[str]:
    if frames == ["-"]:
        return [line.strip() for line in sys.stdin if line.strip()]
    return frames


def _main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    failures = 0
    for raw in _inputs(args.frames):
        described = _describe(raw)
        if "error" in described:
            failures += 1
        print(json.dumps(described, indent=None if args.compact else 2, ensure_ascii=False))

    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(_main())
