"""Command-line interface for dpipng."""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .errors import DpiPngError
from .palette import Binary, EightBit, FixedSmall, PalettePolicy
from .pipeline import DEFAULT_DPI, process_image

logger = logging.getLogger("dpipng.cli")

POLICIES = ["binary", "fixed-small", "eight-bit", "none"]


def build_policy(args: argparse.Namespace) -> Optional[PalettePolicy]:
    if args.policy == "binary":
        return Binary(args.background, args.foreground)
    if args.policy == "fixed-small":
        return FixedSmall()
    if args.policy == "eight-bit":
        return EightBit(method=args.eight_bit_method)
    return None


def default_output(input_path: str, dpi: float) -> Path:
    path = Path(input_path)
    return path.parent / f"{path.stem}_{dpi:g}dpi.png"


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the command-line interface"""
    parser = argparse.ArgumentParser(
        description="Reduce a PNG to a constrained palette and declare its print density",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  dpipng scan.png                                   # white/black, 600 DPI
  dpipng scan.png --foreground '#ff0000'            # white/red ink
  dpipng scan.png --policy fixed-small --dpi 300    # 6-color palette
  dpipng photo.png --policy eight-bit -o out.png    # 8-bit indexed
  dpipng photo.png --policy none --dpi 72           # keep colors, set DPI only
        """,
    )
    parser.add_argument("input", help="Input PNG file")
    parser.add_argument("-o", "--output", help="Output PNG file (default: <input>_<dpi>dpi.png)")
    parser.add_argument(
        "-p", "--policy", choices=POLICIES, default="binary", help="Palette policy (default: binary)"
    )
    parser.add_argument(
        "--background", default="#ffffff", help="Binary background color (default: #ffffff)"
    )
    parser.add_argument(
        "--foreground", default="#000000", help="Binary foreground color (default: #000000)"
    )
    parser.add_argument(
        "--eight-bit-method",
        choices=["adaptive", "web"],
        default="adaptive",
        help="8-bit conversion palette (default: adaptive)",
    )
    parser.add_argument(
        "--dpi", type=float, default=DEFAULT_DPI, help=f"Declared density (default: {DEFAULT_DPI})"
    )
    parser.add_argument("--quiet", "-q", action="store_true", help="Suppress output")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    if args.quiet:
        logging.getLogger().setLevel(logging.ERROR)
    elif args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    output = Path(args.output) if args.output else default_output(args.input, args.dpi)

    try:
        policy = build_policy(args)
        result = process_image(args.input, policy=policy, dpi=args.dpi)
        output.write_bytes(result["png"])
    except (DpiPngError, OSError, ValueError) as e:
        logger.error(f"Error processing image: {e}")
        return 1

    if not args.quiet:
        manifest = result["manifest"]
        density = result["density"]
        print(f"✓ Wrote {output} ({manifest.image_size[0]}x{manifest.image_size[1]})")
        print(
            f"  Density: {density.pixels_per_unit_x}x{density.pixels_per_unit_y} "
            f"px/{density.unit} ({args.dpi:g} DPI)"
        )
        print(f"  Time: {manifest.processing_time_ms}ms")
        if args.verbose:
            print("\nProcessing Manifest:")
            print(json.dumps(manifest.to_dict(), indent=2))

    return 0


if __name__ == "__main__":
    sys.exit(main())
