# check the structure of a GIF file against the GIF89a grammar and
# optionally recover frames hidden behind a forged Trailer

import argparse, logging, os, sys

from PIL import Image

from gifgrammar import GifError
from gifparse import parse_gif
from gifpatch import ParseConfig

log = logging.getLogger("gifcheck")

# values of -l/--log-level
LOG_LEVELS = (logging.DEBUG, logging.INFO, logging.WARNING, logging.ERROR)

# exit status when the Trailer is followed by unparsed bytes
EXIT_OUTSTANDING = 2

def parse_arguments(argv=None):
    # parse command line arguments using argparse

    parser = argparse.ArgumentParser(
        description="Check the structure of a GIF file against the GIF89a grammar. Data after"
        " an early Trailer may be a hidden frame; --reprocess tries to recover it."
    )

    parser.add_argument(
        "-r", "--reprocess", action="store_true",
        help="Re-read early Trailers as Extension Introducers and keep the change if a"
        " Graphic Block follows."
    )
    parser.add_argument(
        "-o", "--output", help="Write the (patched) GIF file here."
    )
    parser.add_argument(
        "-l", "--log-level", type=int, choices=range(len(LOG_LEVELS)), default=2,
        help="0=debug, 1=info, 2=warnings (default), 3=errors only."
    )
    parser.add_argument(
        "-d", "--decoder-check", action="store_true",
        help="Also count the frames a conventional decoder (Pillow) reads from the file."
    )
    parser.add_argument(
        "input_file", help="GIF file to check."
    )

    args = parser.parse_args(argv)

    if not os.path.isfile(args.input_file):
        sys.exit("Input file not found.")
    if args.output is not None and os.path.exists(args.output):
        sys.exit("Output file already exists.")

    return args

def count_decoder_frames(path):
    # number of frames Pillow reads from a GIF file, or None if it fails

    try:
        with Image.open(path) as image:
            return getattr(image, "n_frames", 1)
    except (OSError, EOFError, SyntaxError, ValueError) as error:
        log.error(f"Pillow could not read the file: {error}")
        return None

def main(argv=None):
    args = parse_arguments(argv)
    logLevel = LOG_LEVELS[args.log_level]
    logging.basicConfig(format="%(levelname)s: %(message)s")
    logging.getLogger().setLevel(logLevel)

    config = ParseConfig(
        logLevel=logLevel,
        recoverForgedTrailers=args.reprocess,
        produceCorrectedOutput=args.output is not None,
    )

    try:
        with open(args.input_file, "rb") as handle:
            data = handle.read()
    except OSError:
        sys.exit("Error reading input file.")

    try:
        state = parse_gif(data, config)
    except GifError as error:
        sys.exit(f"Error in GIF file: {error}")

    log.info(
        f"{args.input_file}: version {state.version}, {state.graphicBlockCount} Graphic Blocks"
        f" ({state.imageCount} images), {len(state.patches)} patches"
    )
    for appId in state.applicationIds:
        log.info(f"Application Extension: {appId}")
    for patch in state.patches:
        log.warning(f"Patched byte {patch}")

    if args.decoder_check:
        frameCount = count_decoder_frames(args.input_file)
        if frameCount is not None:
            log.warning(
                f"Pillow reads {frameCount} frames, the grammar found {state.imageCount} images"
            )

    if args.output is not None:
        try:
            with open(args.output, "wb") as handle:
                handle.write(state.correctedBuffer)
        except OSError:
            sys.exit("Error writing output file.")

    if not state.complete:
        log.warning(
            f"{state.outstandingByteCount} bytes after the Trailer were not parsed"
        )
        sys.exit(EXIT_OUTSTANDING)

if __name__ == "__main__":
    main()
