# structural check of a GIF data stream:
# <GIF Data Stream> ::= Header <Logical Screen> <Data>* Trailer
#
# a Trailer found before the end of the data may be a forged byte hiding the
# frames after it; with recoverForgedTrailers, such a Trailer is read again as
# an Extension Introducer and, if a Graphic Block follows, replaced for good
# and recorded as a Patch

import logging

from gifgrammar import (
    EXTENSION_INTRODUCER, TRAILER, IncompleteStream, UnrecognizedBlock, is_exhaustion,
    deepest_failure, is_failure, read_colour_table, read_graphic_block, read_header, read_lsd,
    read_special_purpose_block, read_trailer,
)
from gifpatch import GifParseState, ParseConfig, Patch, apply_patches, emit

log = logging.getLogger(__name__)

def expect(result):
    # raise the failure of a production that has no alternative
    if is_failure(result):
        raise result
    return result

def record_graphic_block(block, state, config):
    # count a Graphic Block read from the stream
    state.graphicBlockCount += 1
    if block["kind"] == "image":
        state.imageCount += 1
    elif block["kind"] == "application":
        record_application_extension(block["block"], state, config)
    emit(
        log, config, logging.INFO,
        f"Finished reading Graphic Block #{state.graphicBlockCount - 1} ({block['kind']})"
    )

def record_application_extension(ext, state, config):
    appId = ext["identifier"] + ext["authCode"]
    state.applicationIds.append(appId)
    emit(log, config, logging.INFO, f"Read Application Extension: {appId}")

def recover_forged_trailer(data, offset, state, config):
    # try reading the Trailer at offset as an Extension Introducer;
    # on success, patch data and return the offset after the Graphic Block
    # read, otherwise return None and leave data untouched

    scratch = bytearray(data)
    scratch[offset] = EXTENSION_INTRODUCER
    result = read_graphic_block(scratch, offset, config)
    del scratch
    if is_failure(result):
        emit(
            log, config, logging.INFO,
            f"Trailer at 0x{offset:x} is genuine; not a Graphic Block either: {result}"
        )
        return None

    (block, nextOffset) = result
    patch = Patch(offset, TRAILER, EXTENSION_INTRODUCER)
    data[patch.index] = patch.newValue
    state.record_patch(patch)
    emit(
        log, config, logging.WARNING,
        f"Read a Graphic Block from 0x{offset:x} to 0x{nextOffset:x}; the Trailer byte "
        f"(0x{TRAILER:02x}) at 0x{offset:x} was fake"
    )
    record_graphic_block(block, state, config)
    return nextOffset

def read_data_blocks(data, offset, state, config):
    # <Data>* Trailer; return offset after the Trailer
    # alternatives are tried in this order: Special-Purpose Block, Graphic
    # Block, Trailer (an Application Extension is a valid Graphic-Rendering
    # Block here too, so it must be claimed as a Special-Purpose Block first)

    while True:
        if offset >= len(data):
            raise IncompleteStream("data stream ended before the Trailer", offset)

        result = read_special_purpose_block(data, offset, config)
        if not is_failure(result):
            (ext, offset) = result
            record_application_extension(ext, state, config)
            continue
        specialFailure = result

        result = read_graphic_block(data, offset, config)
        if not is_failure(result):
            (block, offset) = result
            record_graphic_block(block, state, config)
            continue
        graphicFailure = result

        result = read_trailer(data, offset, config)
        if is_failure(result):
            failure = deepest_failure(specialFailure, graphicFailure, result)
            if is_exhaustion(failure):
                raise failure
            raise UnrecognizedBlock(offset, {
                "Special-Purpose Block": specialFailure,
                "Graphic Block":         graphicFailure,
                "Trailer":               result,
            })

        trailerOffset = offset
        offset = result[1]
        state.trailerSeen = True
        state.outstandingByteCount = len(data) - offset
        if not state.outstandingByteCount:
            emit(log, config, logging.INFO, f"Read Trailer at 0x{trailerOffset:x}")
            return offset

        emit(
            log, config, logging.WARNING,
            f"Read Trailer at 0x{trailerOffset:x} of {len(data)} bytes; "
            f"{state.outstandingByteCount} bytes follow it, there may be hidden frames"
        )
        if not config.recoverForgedTrailers:
            emit(
                log, config, logging.WARNING,
                "Reprocess the data after the Trailer to look for hidden frames."
            )
            return offset

        nextOffset = recover_forged_trailer(data, trailerOffset, state, config)
        if nextOffset is None:
            return offset
        state.trailerSeen = False
        state.outstandingByteCount = 0
        offset = nextOffset

def parse_gif(data, config=ParseConfig()):
    # check the structure of a complete GIF file (bytes-like);
    # return a GifParseState, raise GifError if the data can't be parsed

    source = bytes(data)
    buffer = bytearray(source)  # receives accepted patches
    state = GifParseState()
    emit(log, config, logging.DEBUG, f"GIF is {len(buffer)} bytes")

    (header, offset) = expect(read_header(buffer, 0, config))
    state.signatureValid = True
    state.version = header["version"]
    emit(log, config, logging.INFO, f"Valid GIF header, version {header['version']}")

    (lsd, offset) = expect(read_lsd(buffer, offset, config))
    if lsd["gctFlag"]:
        offset = expect(read_colour_table(buffer, offset, lsd["gctExponent"], config))[1]

    state.finalOffset = read_data_blocks(buffer, offset, state, config)

    if config.produceCorrectedOutput:
        (state.correctedBuffer, state.skippedPatches) = apply_patches(source, state.patches)
        for patch in state.skippedPatches:
            emit(log, config, logging.WARNING, f"Patch not applied ({patch})")

    return state
