import logging

import pytest

from gifgrammar import (
    DescriptorInvariantViolation, IncompleteStream, TruncatedBuffer, UnrecognizedBlock,
)
from gifparse import parse_gif
from gifpatch import ParseConfig, Patch, apply_patches

import gifbuild
from gifbuild import application, forge, frame, plain_text, stream

RECOVER = ParseConfig(recoverForgedTrailers=True)

def forged_stream():
    # one frame, then a frame hidden behind a forged Trailer;
    # return (data, offset of the forged Trailer)
    prefix = stream(application(), frame(), trailer=False)
    return (prefix + forge(frame(delayTime=20)) + b";", len(prefix))

def test_minimal_stream():
    data = stream(gctExponent=None)
    state = parse_gif(data)
    assert state.signatureValid
    assert state.version == "89a"
    assert state.trailerSeen
    assert state.complete
    assert state.finalOffset == len(data) == 14
    assert state.graphicBlockCount == 0
    assert state.patches == ()

def test_well_formed_stream():
    data = stream(
        application(), frame(), plain_text(), gifbuild.image(lctExponent=3), gctExponent=7,
        version=b"87a"
    )
    state = parse_gif(data)
    assert state.complete
    assert state.finalOffset == len(data)
    assert state.outstandingByteCount == 0
    assert state.version == "87a"
    assert state.graphicBlockCount == 3
    assert state.imageCount == 2
    assert state.applicationIds == ["NETSCAPE2.0"]

def test_application_extension_after_control_extension():
    data = stream(gifbuild.gce() + application(identifier=b"XMP Data", authCode=b"XMP"), frame())
    state = parse_gif(data)
    assert state.complete
    assert state.graphicBlockCount == 2
    assert state.applicationIds == ["XMP DataXMP"]

@pytest.mark.parametrize("tail", [b"", b";", frame() + b";", b"\x00\x01\x02"])
def test_background_index_without_global_table(tail):
    data = gifbuild.header() + gifbuild.lsd(bgIndex=9) + tail
    with pytest.raises(DescriptorInvariantViolation) as excinfo:
        parse_gif(data)
    assert excinfo.value.offset == 11

def test_every_truncation_is_reported():
    data = stream(application(), frame(), plain_text(), gifbuild.image(lctExponent=1))
    for length in range(len(data)):
        with pytest.raises((TruncatedBuffer, IncompleteStream)):
            parse_gif(data[:length])

def test_concatenated_streams():
    first = stream(frame())
    data = first + stream(frame(), frame())
    assert parse_gif(first).complete
    state = parse_gif(data, RECOVER)
    assert state.trailerSeen
    assert state.finalOffset == len(first)
    assert state.outstandingByteCount == len(data) - len(first)
    assert state.patches == ()

def test_missing_trailer():
    data = stream(frame(), trailer=False)
    with pytest.raises(IncompleteStream) as excinfo:
        parse_gif(data)
    assert excinfo.value.offset == len(data)

def test_unrecognized_block():
    data = stream(frame(), trailer=False) + b"\x00;"
    with pytest.raises(UnrecognizedBlock) as excinfo:
        parse_gif(data)
    error = excinfo.value
    assert error.offset == len(data) - 2
    assert set(error.reasons) == {"Special-Purpose Block", "Graphic Block", "Trailer"}
    assert "not a Trailer" in str(error)

def test_comment_extension_is_unrecognized():
    with pytest.raises(UnrecognizedBlock):
        parse_gif(stream(gifbuild.comment(), frame()))

def test_forged_trailer_without_recovery():
    (data, forgedAt) = forged_stream()
    state = parse_gif(data)
    assert state.trailerSeen
    assert not state.complete
    assert state.finalOffset == forgedAt + 1
    assert state.outstandingByteCount == len(data) - forgedAt - 1
    assert state.patches == ()
    assert state.imageCount == 1

def test_forged_trailer_recovered():
    (data, forgedAt) = forged_stream()
    state = parse_gif(data, RECOVER)
    assert state.complete
    assert state.finalOffset == len(data)
    assert state.patches == (Patch(forgedAt, 0x3b, 0x21),)
    assert state.imageCount == 2
    assert state.correctedBuffer is None

def test_forged_trailer_warns(caplog):
    caplog.set_level(logging.WARNING)
    (data, forgedAt) = forged_stream()
    parse_gif(data)
    assert "there may be hidden frames" in caplog.text
    caplog.clear()
    parse_gif(data, RECOVER)
    assert f"at 0x{forgedAt:x} was fake" in caplog.text

def test_log_threshold_comes_from_config(caplog):
    caplog.set_level(logging.DEBUG)
    (data, forgedAt) = forged_stream()
    parse_gif(data, ParseConfig(logLevel=logging.ERROR))
    assert caplog.records == []
    parse_gif(data, ParseConfig(logLevel=logging.DEBUG))
    assert any(record.levelno == logging.DEBUG for record in caplog.records)

def test_input_is_not_modified():
    (data, forgedAt) = forged_stream()
    buffer = bytearray(data)
    parse_gif(buffer, RECOVER)
    assert bytes(buffer) == data

def test_corrected_output():
    (data, forgedAt) = forged_stream()
    state = parse_gif(data, RECOVER._replace(produceCorrectedOutput=True))
    assert state.skippedPatches == []
    assert state.correctedBuffer[forgedAt] == 0x21
    assert bytes(state.correctedBuffer) == data[:forgedAt] + b"!" + data[forgedAt+1:]

def test_patched_stream_needs_no_recovery():
    (data, forgedAt) = forged_stream()
    state = parse_gif(data, RECOVER)
    (patched, skipped) = apply_patches(data, state.patches)
    assert skipped == []
    again = parse_gif(patched)
    assert again.trailerSeen and again.outstandingByteCount == 0
    assert again.finalOffset == len(patched)
    assert again.patches == ()

def test_each_forged_trailer_is_recovered():
    prefix = stream(frame(), trailer=False)
    second = prefix + forge(frame())
    data = second + forge(frame()) + b";"
    state = parse_gif(data, RECOVER)
    assert state.complete
    assert [patch.index for patch in state.patches] == [len(prefix), len(second)]
    assert state.imageCount == 3

def test_genuine_trailer_is_kept():
    data = stream(frame()) + b"junk after the end"
    state = parse_gif(data, RECOVER)
    assert state.trailerSeen
    assert state.outstandingByteCount == len(b"junk after the end")
    assert state.finalOffset == len(data) - state.outstandingByteCount
    assert state.patches == ()

def test_configurations_do_not_interact():
    (data, forgedAt) = forged_stream()
    recovered = parse_gif(data, RECOVER)
    plain = parse_gif(data)
    assert len(recovered.patches) == 1
    assert plain.patches == ()
    assert plain.outstandingByteCount > 0
