# parse configuration, parse state and the patch ledger of a GIF check
#
# the ledger is the complete record of every byte the checker changed; it is
# replayed onto a copy of the original data with apply_patches(), which
# re-checks each patch before writing it

import collections, logging

# configuration of one parse; never modified after creation
#     logLevel:               lowest logging level the parse emits
#     recoverForgedTrailers:  re-read early Trailers as Extension Introducers?
#     produceCorrectedOutput: attach the patched data to the parse result?
ParseConfig = collections.namedtuple(
    "ParseConfig",
    ("logLevel", "recoverForgedTrailers", "produceCorrectedOutput"),
    defaults=(logging.WARNING, False, False),
)

def emit(logger, config, level, message):
    # log a message if its level reaches the threshold of this parse
    if level >= config.logLevel:
        logger.log(level, message)

class Patch(collections.namedtuple("Patch", ("index", "oldValue", "newValue"))):
    # a byte-level correction: the byte at index must still be oldValue
    # before it may be replaced with newValue

    __slots__ = ()

    def applies_to(self, buffer):
        # is the precondition of this patch met by buffer?
        return 0 <= self.index < len(buffer) and buffer[self.index] == self.oldValue

    def __str__(self):
        return f"0x{self.index:x}: 0x{self.oldValue:02x} -> 0x{self.newValue:02x}"

def apply_patches(buffer, patches):
    # apply patches to a copy of buffer in ledger order;
    # return (patched data as bytearray, patches whose precondition failed)

    patched = bytearray(buffer)
    skipped = []
    for patch in patches:
        if patch.applies_to(patched):
            patched[patch.index] = patch.newValue
        else:
            skipped.append(patch)
    return (patched, skipped)

class GifParseState:
    """Accumulator threaded through one parse; also its result.

    signatureValid:       the Header had a GIF signature and known version
    version:              "87a" or "89a" (None until the Header is read)
    trailerSeen:          a Trailer ended the parse
    outstandingByteCount: bytes left after that Trailer
    finalOffset:          offset after the last production read
    graphicBlockCount:    Graphic Blocks read
    imageCount:           Table-Based Images among them
    applicationIds:       identifier + authentication code of each
                          Application Extension, in stream order
    correctedBuffer:      patched data (only with produceCorrectedOutput)
    skippedPatches:       patches correctedBuffer could not apply
    """

    def __init__(self):
        self.signatureValid = False
        self.version = None
        self.trailerSeen = False
        self.outstandingByteCount = 0
        self.finalOffset = 0
        self.graphicBlockCount = 0
        self.imageCount = 0
        self.applicationIds = []
        self.correctedBuffer = None
        self.skippedPatches = []
        self._patches = []

    @property
    def patches(self):
        # the ledger, read-only
        return tuple(self._patches)

    def record_patch(self, patch):
        self._patches.append(patch)

    @property
    def complete(self):
        # was the whole buffer consumed up to a genuine Trailer?
        return self.trailerSeen and self.outstandingByteCount == 0

    def __repr__(self):
        return (
            f"GifParseState(version={self.version!r}, trailerSeen={self.trailerSeen}, "
            f"outstandingByteCount={self.outstandingByteCount}, "
            f"finalOffset={self.finalOffset}, patches={len(self._patches)})"
        )
