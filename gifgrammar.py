# grammar productions of a GIF data stream (Appendix B of
# https://www.w3.org/Graphics/GIF/spec-gif89a.txt)
#
# acronyms:
#     GCE = Graphic Control Extension
#     GCT = Global Color Table
#     LCT = Local Color Table
#     LSD = Logical Screen Descriptor
#     LZW = Lempel-Ziv-Welch
#
# every production takes (data, offset, config) and returns either
# (value, offset_after_value) or an instance of GifError; a failure is
# returned, not raised, and never consumes anything

import logging, struct

from gifpatch import emit

log = logging.getLogger(__name__)

EXTENSION_INTRODUCER = 0x21  # "!"
IMAGE_SEPARATOR      = 0x2c  # ","
TRAILER              = 0x3b  # ";"

GRAPHIC_CONTROL_LABEL = 0xf9
APPLICATION_LABEL     = 0xff
PLAIN_TEXT_LABEL      = 0x01

GCE_BODY_SIZE           = 4
APPLICATION_HEADER_SIZE = 11  # identifier (8) + authentication code (3)
PLAIN_TEXT_BODY_SIZE    = 12

LABEL_NAMES = {
    GRAPHIC_CONTROL_LABEL: "Graphic Control",
    APPLICATION_LABEL:     "Application",
    PLAIN_TEXT_LABEL:      "Plain Text",
}

# --- Errors ---------------------------------------------------------------------------------------

class GifError(Exception):
    # structural error in a GIF data stream at byte offset

    def __init__(self, message, offset):
        super().__init__(message)
        self.offset = offset

    def __str__(self):
        return f"{self.args[0]} at offset 0x{self.offset:x}"

class MalformedSignature(GifError):
    pass

class UnsupportedVersion(GifError):
    pass

class DescriptorInvariantViolation(GifError):
    pass

class UnexpectedIntroducerOrLabel(GifError):
    pass

class UnexpectedFixedBlockSize(GifError):
    pass

class MissingBlockTerminator(GifError):
    pass

class TruncatedBuffer(GifError):
    # a declared length runs past the end of the buffer
    pass

class IncompleteStream(GifError):
    # the buffer ended before a fixed part of a production
    pass

class UnrecognizedBlock(GifError):
    # none of the alternatives of <Data> matched;
    # reasons: alternative name -> rejection (GifError)

    def __init__(self, offset, reasons):
        super().__init__(
            "not a Special-Purpose Block, Graphic Block or Trailer", offset
        )
        self.reasons = reasons

    def __str__(self):
        return super().__str__() + "".join(
            f"; not a {name}: {reason}" for (name, reason) in self.reasons.items()
        )

def is_failure(result):
    # did a production fail?
    return isinstance(result, GifError)

def deepest_failure(*failures):
    # the failure that got furthest into the buffer (the first one on ties)
    return max(failures, key=lambda failure: failure.offset)

def is_exhaustion(failure):
    # did a production fail only because the buffer ran out?
    return isinstance(failure, (IncompleteStream, TruncatedBuffer))

# --- Cursor ---------------------------------------------------------------------------------------

def missing(data, offset, length, what):
    # IncompleteStream if fewer than length bytes of a fixed part remain
    if offset + length > len(data):
        return IncompleteStream(f"buffer ended before {what}", offset)
    return None

def overrun(data, offset, length, what):
    # TruncatedBuffer if a declared length runs past the end of the buffer
    if offset + length > len(data):
        return TruncatedBuffer(
            f"{what} needs {length} bytes but {len(data) - offset} remain", offset
        )
    return None

def expect_byte(data, offset, value, what):
    # the byte at offset must be value
    failure = missing(data, offset, 1, what)
    if failure:
        return failure
    if data[offset] != value:
        return UnexpectedIntroducerOrLabel(
            f"expected {what} 0x{value:02x}, got 0x{data[offset]:02x}", offset
        )
    return None

def expect_extension(data, offset, label):
    # Extension Introducer and label of one Extension type
    return expect_byte(data, offset, EXTENSION_INTRODUCER, "Extension Introducer") \
    or expect_byte(data, offset + 1, label, LABEL_NAMES[label] + " Label")

def expect_block_size(data, offset, size, what):
    # a Block Size byte with a fixed value
    failure = missing(data, offset, 1, f"{what} block size")
    if failure:
        return failure
    if data[offset] != size:
        return UnexpectedFixedBlockSize(
            f"{what} block size must be {size}, got {data[offset]}", offset
        )
    return None

def colour_table_length(exponent):
    # byte length of a Global/Local Color Table from its 3-bit size field
    if not 0 <= exponent <= 7:
        raise ValueError(f"colour table size field out of range: {exponent}")
    return 3 * 2 ** (exponent + 1)

# --- Stream prologue ------------------------------------------------------------------------------

def read_header(data, offset, config):
    # Header: "GIF" + "87a"/"89a"

    failure = missing(data, offset, 3, "Signature")
    if failure:
        return failure
    if data[offset:offset+3] != b"GIF":
        return MalformedSignature("Header has unknown signature (missing GIF)", offset)
    failure = missing(data, offset + 3, 3, "Version")
    if failure:
        return failure
    version = bytes(data[offset+3:offset+6])
    if version not in (b"87a", b"89a"):
        return UnsupportedVersion(
            "Header version is not 87a or 89a: "
            + version.decode("ascii", errors="backslashreplace"),
            offset + 3
        )

    emit(log, config, logging.DEBUG, f"Header: GIF{version.decode('ascii')}")
    return ({"signature": "GIF", "version": version.decode("ascii")}, offset + 6)

def read_lsd(data, offset, config):
    # Logical Screen Descriptor (7 bytes); return a dict

    failure = missing(data, offset, 7, "Logical Screen Descriptor")
    if failure:
        return failure
    (width, height, packedFields, bgIndex, aspectRatio) \
    = struct.unpack_from("<2H3B", data, offset)

    lsd = {
        "width":            width,
        "height":           height,
        "gctFlag":          bool(packedFields & 0b10000000),
        "colourResolution": ((packedFields >> 4) & 0b00000111) + 1,
        "sortFlag":         bool(packedFields & 0b00001000),
        "gctExponent":      packedFields & 0b00000111,
        "bgIndex":          bgIndex,
        "aspectRatio":      aspectRatio,
    }
    if not lsd["gctFlag"] and bgIndex:
        return DescriptorInvariantViolation(
            "no Global Color Table, but background color index is set", offset + 5
        )

    emit(log, config, logging.DEBUG, f"Logical Screen Descriptor: {lsd}")
    return (lsd, offset + 7)

def read_colour_table(data, offset, exponent, config, what="Global Color Table"):
    # skip a Global/Local Color Table; return its byte length

    length = colour_table_length(exponent)
    failure = overrun(data, offset, length, what)
    if failure:
        return failure
    emit(log, config, logging.DEBUG, f"{what}: {length} bytes")
    return (length, offset + length)

# --- Blocks ---------------------------------------------------------------------------------------

def read_subblocks(data, offset, config):
    # Data Sub-blocks up to and including the Block Terminator;
    # return the total payload length

    payloadLen = 0
    while True:
        failure = missing(data, offset, 1, "data sub-block size")
        if failure:
            return failure
        sbSize = data[offset]  # subblock size
        offset += 1
        if not sbSize:
            return (payloadLen, offset)
        failure = overrun(data, offset, sbSize, "data sub-block")
        if failure:
            return failure
        emit(log, config, logging.DEBUG, f"data sub-block of size {sbSize}")
        payloadLen += sbSize
        offset += sbSize

def read_graphic_control_extension(data, offset, config):
    # Graphic Control Extension; return a dict

    failure = expect_extension(data, offset, GRAPHIC_CONTROL_LABEL) \
    or expect_block_size(data, offset + 2, GCE_BODY_SIZE, "Graphic Control Extension") \
    or overrun(data, offset + 3, GCE_BODY_SIZE, "Graphic Control Extension")
    if failure:
        return failure
    (packedFields, delayTime, transparentIndex) = struct.unpack_from("<BHB", data, offset + 3)

    offset += 3 + GCE_BODY_SIZE
    failure = missing(data, offset, 1, "Graphic Control Extension block terminator")
    if failure:
        return failure
    if data[offset]:
        return MissingBlockTerminator(
            f"Graphic Control Extension not terminated (0x{data[offset]:02x})", offset
        )

    return ({
        "disposal":         (packedFields & 0b00011100) >> 2,
        "userInput":        bool(packedFields & 0b00000010),
        "transparentFlag":  bool(packedFields & 0b00000001),
        "delayTime":        delayTime,
        "transparentIndex": transparentIndex,
    }, offset + 1)

def read_application_extension(data, offset, config):
    # Application Extension; return a dict

    failure = expect_extension(data, offset, APPLICATION_LABEL) \
    or expect_block_size(data, offset + 2, APPLICATION_HEADER_SIZE, "Application Extension") \
    or overrun(data, offset + 3, APPLICATION_HEADER_SIZE, "Application Extension")
    if failure:
        return failure
    (identifier, authCode) = struct.unpack_from("8s3s", data, offset + 3)

    result = read_subblocks(data, offset + 3 + APPLICATION_HEADER_SIZE, config)
    if is_failure(result):
        return result
    (dataLen, offset) = result

    return ({
        "identifier": identifier.decode("ascii", errors="backslashreplace"),
        "authCode":   authCode.decode("ascii", errors="backslashreplace"),
        "dataLength": dataLen,
    }, offset)

def read_plain_text_extension(data, offset, config):
    # Plain Text Extension; text itself is not interpreted

    failure = expect_extension(data, offset, PLAIN_TEXT_LABEL) \
    or expect_block_size(data, offset + 2, PLAIN_TEXT_BODY_SIZE, "Plain Text Extension") \
    or overrun(data, offset + 3, PLAIN_TEXT_BODY_SIZE, "Plain Text Extension")
    if failure:
        return failure

    result = read_subblocks(data, offset + 3 + PLAIN_TEXT_BODY_SIZE, config)
    if is_failure(result):
        return result
    (dataLen, offset) = result
    return ({"dataLength": dataLen}, offset)

def read_table_based_image(data, offset, config):
    # Image Descriptor, optional Local Color Table and Image Data;
    # the LZW data is located and skipped, not decoded; return a dict

    failure = expect_byte(data, offset, IMAGE_SEPARATOR, "Image Separator") \
    or missing(data, offset + 1, 9, "end of Image Descriptor")
    if failure:
        return failure
    (x, y, width, height, packedFields) = struct.unpack_from("<4HB", data, offset + 1)
    offset += 10

    image = {
        "x":             x,
        "y":             y,
        "width":         width,
        "height":        height,
        "lctFlag":       bool(packedFields & 0b10000000),
        "interlaceFlag": bool(packedFields & 0b01000000),
        "sortFlag":      bool(packedFields & 0b00100000),
        "lctExponent":   packedFields & 0b00000111,
    }

    if image["lctFlag"]:
        result = read_colour_table(
            data, offset, image["lctExponent"], config, "Local Color Table"
        )
        if is_failure(result):
            return result
        offset = result[1]

    failure = missing(data, offset, 1, "LZW minimum code size")
    if failure:
        return failure
    lzwCodeSize = data[offset]
    offset += 1
    image["lzwCodeSize"] = lzwCodeSize
    image["clearCode"] = 2 ** lzwCodeSize
    image["endCode"] = 2 ** lzwCodeSize + 1
    emit(
        log, config, logging.DEBUG,
        f"LZW code size {lzwCodeSize}, clear code {image['clearCode']}, "
        f"end of information code {image['endCode']}"
    )
    if lzwCodeSize != 8:
        emit(log, config, logging.DEBUG, "LZW code size is not 8")

    result = read_subblocks(data, offset, config)
    if is_failure(result):
        return result
    (image["dataLength"], offset) = result
    emit(log, config, logging.DEBUG, f"{image['dataLength']} bytes of image data")
    return (image, offset)

def read_trailer(data, offset, config):
    # Trailer (one byte, no body)
    failure = expect_byte(data, offset, TRAILER, "Trailer")
    if failure:
        return failure
    return (TRAILER, offset + 1)

# --- Compound productions -------------------------------------------------------------------------

def read_graphic_rendering_block(data, offset, config):
    # <Graphic-Rendering Block> ::= <Table-Based Image> | Plain Text Extension
    # an Application Extension is also accepted here; such streams exist in
    # the wild (a NETSCAPE2.0 block right after a Graphic Control Extension);
    # return (kind, value)

    failures = []
    for (kind, production) in (
        ("image",       read_table_based_image),
        ("plainText",   read_plain_text_extension),
        ("application", read_application_extension),
    ):
        result = production(data, offset, config)
        if not is_failure(result):
            (value, offset) = result
            return ((kind, value), offset)
        failures.append(result)
    return deepest_failure(*failures)

def read_graphic_block(data, offset, config):
    # <Graphic Block> ::= [Graphic Control Extension] <Graphic-Rendering Block>
    # return a dict; fails as a whole if a Graphic Control Extension is not
    # followed by a Graphic-Rendering Block

    gceFailure = None
    result = read_graphic_control_extension(data, offset, config)
    if is_failure(result):
        gce = None
        gceFailure = result
        renderOffset = offset
    else:
        (gce, renderOffset) = result
        emit(log, config, logging.INFO, "Read a Graphic Control Extension")

    result = read_graphic_rendering_block(data, renderOffset, config)
    if is_failure(result):
        return result if gceFailure is None else deepest_failure(gceFailure, result)
    ((kind, value), offset) = result
    return ({"gce": gce, "kind": kind, "block": value}, offset)

def read_special_purpose_block(data, offset, config):
    # <Special-Purpose Block> ::= Application Extension | Comment Extension
    # Comment Extensions are not supported and never match
    return read_application_extension(data, offset, config)
