import argparse
import json
import logging
import os
import sys

from pydantic import ValidationError

from scan_config import PrefetchScanConfig, ScanConfig
from timeline_skill import generate_unified_timeline

SUPPORTED_EXTENSIONS = (".e01", ".dd")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="chronos-dfir",
        description="Chronos-DFIR: forensic timeline generator for Windows disk images",
    )
    parser.add_argument("image_path", help="Path to the forensic disk image file (.E01 or .dd)")
    parser.add_argument("--output", default="output", help="Output directory")
    parser.add_argument("--evtx", action="append", default=[], metavar="PATH",
                        help="Extracted .evtx file to include (repeatable)")
    parser.add_argument("--prefetch", action="append", default=[], metavar="PATH",
                        help="Extracted .pf file to include (repeatable)")
    parser.add_argument("--entry-size", type=int, default=1024, help="MFT entry size in bytes")
    parser.add_argument("--stride", type=int, default=None, help="Scan stride in bytes (default: entry size)")
    parser.add_argument("--max-facts", type=int, default=1000, help="Stop the MFT scan after this many file facts")
    parser.add_argument("--retention-days", type=int, default=None,
                        help="Only keep file events from the last N days (default: keep everything)")
    parser.add_argument("--no-carve-prefetch", action="store_true",
                        help="Do not carve prefetch headers out of the image")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser


def validate_image_path(path):
    """Returns an error message, or None when the path is usable."""
    if not os.path.exists(path):
        return f"Image file not found: {path}"
    ext = os.path.splitext(path)[1].lower()
    if ext not in SUPPORTED_EXTENSIONS:
        return "Unsupported image format. Supported formats: .E01, .dd"
    return None


def main(argv=None):
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    print("[*] Chronos-DFIR initialized.")
    print(f"[*] Processing: {args.image_path}")
    print(f"[*] Output Directory: {args.output}")

    error = validate_image_path(args.image_path)
    if error:
        print(f"[!] Error: {error}")
        return 1

    try:
        config = ScanConfig(entry_size=args.entry_size, stride=args.stride, max_facts=args.max_facts)
    except ValidationError as e:
        print(f"[!] Invalid scan options: {e}")
        return 1
    if args.retention_days is not None and args.retention_days < 0:
        print(f"[!] Invalid scan options: --retention-days must be 0 or more, got {args.retention_days}")
        return 1

    result = json.loads(generate_unified_timeline(
        args.image_path,
        args.output,
        config=config,
        evtx_paths=args.evtx,
        prefetch_paths=args.prefetch,
        retention_days=args.retention_days,
        carve=not args.no_carve_prefetch,
        prefetch_config=PrefetchScanConfig(),
    ))

    if "error" in result:
        print(f"[!] Error: {result['error']}")
        return 1

    print("[+] Success!")
    print(f"    Facts Extracted: {result['facts_extracted']} ({result['blocks_scanned']} blocks scanned)")
    if result["stopped_early"]:
        print(f"    MFT scan stopped early at the {config.max_facts} fact limit")
    print(f"    Timeline Events: {result['processed_records']}")
    print(f"    HTML Output: {result['files']['html']}")
    print(f"    CSV Output: {result['files']['csv']}")
    print(f"    Excel Output: {result['files']['excel']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
