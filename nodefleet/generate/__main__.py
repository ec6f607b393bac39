"""Generate node identifiers.

Usage::

    python -m nodefleet.generate --count 5 [--output output.txt] [--append]
"""

from __future__ import annotations

import argparse
import logging

from nodefleet.generate import generate_identifiers, write_identifiers


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    parser = argparse.ArgumentParser(
        prog="python -m nodefleet.generate",
        description="Generate nodeId:hardwareId pairs for testing",
    )
    parser.add_argument("--count", "-n", type=int, required=True, help="Number of identifiers")
    parser.add_argument(
        "--output", "-o",
        default="output.txt",
        help="File to write (default: output.txt)",
    )
    parser.add_argument("--append", action="store_true", help="Append instead of overwrite")
    args = parser.parse_args()

    if args.count < 1:
        parser.error("--count must be at least 1")

    pairs = generate_identifiers(args.count)
    for i, (pub_key, device_id) in enumerate(pairs, start=1):
        print(f"Device Identifier {i}: {device_id}")
        print(f"Public Key {i}: {pub_key}")
    path = write_identifiers(pairs, args.output, append=args.append)
    logging.getLogger(__name__).info("Saved %d identifiers to %s", len(pairs), path)


if __name__ == "__main__":
    main()
