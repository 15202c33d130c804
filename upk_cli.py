# -*- coding: utf-8 -*-
"""
upk_cli.py

Command Line Interface (CLI) for decrypting cooked Unreal packages (.upk).

Uses the upk_package and upk_provider modules to scan an input directory, load the
AES keys, and write the decrypted, decompressed packages to an output directory
using a pool of worker threads.
"""

import argparse
import logging
import os
import sys
import time
from concurrent.futures import ThreadPoolExecutor, as_completed

from upk_package import UnPackageError
from upk_provider import (
    DefaultFileProvider,
    find_install_dir,
    load_aes_keys,
)

logger = logging.getLogger("upk_cli")

DEFAULT_OUTPUT_DIR = "./out"
DEFAULT_SCAN_PATTERN = "*_T_SF.upk"
PROVIDER_TYPES = ["Files", "Streamed"]

# --- Command Functions ---


def setup_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def run_batch(file_provider: DefaultFileProvider, threads: int) -> int:
    """Saves every scanned package using `threads` workers. Returns the number of failures."""
    failed_count = 0
    with ThreadPoolExecutor(max_workers=threads) as pool:
        futures = {pool.submit(file_provider.save_package, game_file.file_name): game_file for game_file in file_provider.files}
        for future in as_completed(futures):
            game_file = futures[future]
            try:
                future.result()
                logger.info("Saved package %s", game_file.file_name)
            except (UnPackageError, MemoryError) as e:
                logger.error("Failed to decrypt %s: %s", game_file.file_name, e)
                failed_count += 1
    return failed_count


def handle_decrypt(args):
    """Handles the 'decrypt' command."""
    if args.provider != "Files":
        print(f"Error: the {args.provider} provider is not supported.", file=sys.stderr)
        sys.exit(1)

    try:
        output = args.output
        os.makedirs(output, exist_ok=True)

        input_dir = args.input if args.input else find_install_dir()
        logger.info("Using encryption keys file: %s", args.keys)
        logger.info("Using output directory: %s", output)
        logger.info("Using input directory: %s", input_dir)

        file_provider = DefaultFileProvider(output, input_dir)
        files_found = file_provider.scan_files(args.pattern)
        logger.info("Scanned directory %s, found %d files", input_dir, files_found)

        keys = load_aes_keys(args.keys)
        for key in keys:
            file_provider.add_aes_key(key)
        logger.info("Loaded %d AES keys", len(keys))
    except (OSError, UnPackageError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    threads = args.threads if args.threads else (os.cpu_count() or 1)
    logger.info("Running with %d threads", threads)

    started = time.perf_counter()
    failed_count = run_batch(file_provider, threads)
    elapsed_ms = (time.perf_counter() - started) * 1000

    logger.info("Finished in %dms. %d packages decrypted, %d failed.", elapsed_ms, files_found - failed_count, failed_count)
    if failed_count > 0:
        sys.exit(1)


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {value}")
    return number


def _existing_path(value: str) -> str:
    if not os.path.exists(value):
        raise argparse.ArgumentTypeError(f'path does not exist: "{value}"')
    return value


# --- Main Execution ---


def main(argv=None):
    parser = argparse.ArgumentParser(description="UPK Decrypter CLI - Decrypt and decompress cooked Unreal packages.", epilog="Example: upk-decrypter decrypt -k keys.txt -i CookedPCConsole -o out -t 8")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show debug output.")
    subparsers = parser.add_subparsers(dest="command", required=True, help="Available commands")

    # --- Decrypt Command ---
    parser_decrypt = subparsers.add_parser("decrypt", help="Decrypts all the upk files in the input directory.")
    parser_decrypt.add_argument("-i", "--input", help="The input directory with all the upk files (default: the game's install directory).")
    parser_decrypt.add_argument("-o", "--output", default=DEFAULT_OUTPUT_DIR, help=f"The output directory where all the decrypted files will be written to (default: {DEFAULT_OUTPUT_DIR}).")
    parser_decrypt.add_argument("-k", "--keys", required=True, type=_existing_path, help="The file with all the encryption keys, one base64 key per line.")
    parser_decrypt.add_argument("-p", "--provider", choices=PROVIDER_TYPES, default="Files", help="The provider to use for the packages (default: Files).")
    parser_decrypt.add_argument("-t", "--threads", type=_positive_int, help="The number of threads that will decrypt the packages (default: CPU count).")
    parser_decrypt.add_argument("--pattern", default=DEFAULT_SCAN_PATTERN, help=f"File name pattern of the packages to decrypt (default: {DEFAULT_SCAN_PATTERN}).")
    parser_decrypt.set_defaults(func=handle_decrypt)

    # --- Parse Arguments ---
    if argv is None and len(sys.argv) == 1:
        parser.print_help(sys.stderr)
        sys.exit(1)
    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    # --- Execute Command ---
    args.func(args)


if __name__ == "__main__":
    main()
