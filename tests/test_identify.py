import time
from dataclasses import replace

import pytest

from conftest import (
    PAGE_H,
    PAGE_W,
    BrokenDecoder,
    FakeOcr,
    HangingDecoder,
    PassThroughEnhancer,
    RecordingDecoder,
    SlowDecoder,
    TagDecoder,
    identity_payload,
    make_page,
)
from scantron_grader.errors import ConfigError
from scantron_grader.identify import GradingContext, IdentificationResolver, ocr_identity, pick_auto_assign
from scantron_grader.layout import DEFAULT_TEMPLATE, code_region_window
from scantron_grader.scoring_defaults import ID_DEFAULTS


def test_decode_tries_variants_in_fixed_order():
    decoder = RecordingDecoder([None] * 8)
    with IdentificationResolver(DEFAULT_TEMPLATE, decoder) as resolver:
        outcome, strategy = resolver.decode(make_page(["A"]))
    assert not outcome.ok
    assert strategy is None
    code = code_region_window(DEFAULT_TEMPLATE, PAGE_W)
    assert decoder.shapes == [
        (PAGE_H, PAGE_W), (2 * PAGE_H, 2 * PAGE_W), (PAGE_H, PAGE_W), (PAGE_H, PAGE_W),
        (code.h, code.w), (2 * code.h, 2 * code.w), (code.h, code.w), (code.h, code.w),
    ]


def test_decode_stops_at_first_valid_payload():
    decoder = RecordingDecoder([None, "{broken", identity_payload("S7")])
    with IdentificationResolver(DEFAULT_TEMPLATE, decoder) as resolver:
        outcome, strategy = resolver.decode(make_page(["A"]))
    assert outcome.identity.student_id == "S7"
    assert strategy == "page/normalized"
    assert len(decoder.shapes) == 3


def test_wrong_schema_version_keeps_looking():
    decoder = RecordingDecoder([identity_payload("S1", v=2)])
    with IdentificationResolver(DEFAULT_TEMPLATE, decoder) as resolver:
        outcome, _ = resolver.decode(make_page(["A"]))
    assert not outcome.ok
    assert "schema version" in outcome.error


def test_decoded_identity_wins_and_ocr_is_not_called():
    ocr = FakeOcr("Doe Jane", 95)
    decoder = TagDecoder({40: identity_payload("S1")})
    with IdentificationResolver(DEFAULT_TEMPLATE, decoder, ocr) as resolver:
        resolution = resolver.resolve(make_page(["A"], tag=40))
    assert resolution.identity.student_id == "S1"
    assert resolution.strategy == "page/original"
    assert resolution.ocr_name is None
    assert ocr.calls == 0


def test_ocr_fallback_accepts_confident_reading():
    ocr = FakeOcr("  Doe,   Jane ", 88)
    with IdentificationResolver(DEFAULT_TEMPLATE, TagDecoder({}), ocr) as resolver:
        resolution = resolver.resolve(make_page(["A"]))
    assert resolution.identity is None
    assert resolution.decode_error
    assert resolution.ocr_name == "Doe, Jane"


def test_low_confidence_ocr_is_no_name():
    ocr = FakeOcr("Doe Jane", 30)
    with IdentificationResolver(DEFAULT_TEMPLATE, TagDecoder({}), ocr, PassThroughEnhancer()) as resolver:
        resolution = resolver.resolve(make_page(["A"]))
    assert resolution.identity is None
    assert resolution.ocr_name is None
    assert ocr.calls == 1


def test_short_ocr_text_is_no_name():
    with IdentificationResolver(DEFAULT_TEMPLATE, TagDecoder({}), FakeOcr("Jo", 99)) as resolver:
        assert resolver.read_name(make_page(["A"])) is None


def test_collaborator_timeout_is_a_failed_attempt():
    settings = replace(ID_DEFAULTS, timeout_s=0.05)
    resolver = IdentificationResolver(DEFAULT_TEMPLATE, SlowDecoder(0.3), settings=settings)
    started = time.monotonic()
    try:
        resolution = resolver.resolve(make_page(["A"]))
    finally:
        resolver.close()
    assert resolution.identity is None
    assert time.monotonic() - started < 3.0


def test_collaborator_exception_is_a_failed_attempt():
    with IdentificationResolver(DEFAULT_TEMPLATE, BrokenDecoder(), FakeOcr("Doe Jane", 90)) as resolver:
        resolution = resolver.resolve(make_page(["A"]))
    assert resolution.identity is None
    assert resolution.ocr_name == "Doe Jane"


def test_no_decoder_configured():
    with IdentificationResolver(DEFAULT_TEMPLATE, None) as resolver:
        resolution = resolver.resolve(make_page(["A"]))
    assert resolution.identity is None
    assert resolution.decode_error == "no code decoder configured"


def test_ocr_identity_uses_batch_context():
    ident = ocr_identity("S9", GradingContext("asg-1", "sec-2", "B", 12))
    assert (ident.student_id, ident.assignment_id, ident.section_id) == ("S9", "asg-1", "sec-2")
    assert ident.version_id == "B"
    assert ident.question_count == 12


def test_pick_auto_assign():
    assert pick_auto_assign([("S1", 120.0), ("S2", 40.0)], 80) == "S1"
    assert pick_auto_assign([("S1", 70.0)], 80) is None
    assert pick_auto_assign([("S1", 100.0), ("S2", 100.0)], 80) is None
    assert pick_auto_assign([], 80) is None


def test_hung_decoder_does_not_starve_later_pages():
    decoder = HangingDecoder({10: identity_payload("S2"), 20: identity_payload("S3")}, hang_tag=50)
    settings = replace(ID_DEFAULTS, timeout_s=0.3)
    resolver = IdentificationResolver(DEFAULT_TEMPLATE, decoder, settings=settings, max_pending_calls=1)
    started = time.monotonic()
    try:
        hung = resolver.resolve(make_page(["A"], page_number=1, tag=50))
        later = [resolver.resolve(make_page(["A"], page_number=n, tag=t)) for n, t in ((2, 10), (3, 20))]
    finally:
        decoder.release.set()
        resolver.close()
    assert hung.identity is None
    assert "timed out" in hung.decode_error
    assert [r.identity.student_id for r in later] == ["S2", "S3"]
    assert resolver.pools_replaced == 1
    # one timeout for the hung page, not one per variant
    assert time.monotonic() - started < 3.0


def test_context_version_is_normalized():
    assert GradingContext("asg-1", version_id=" b ").version_id == "B"
    assert ocr_identity("S9", GradingContext("asg-1", version_id="c")).version_id == "C"


def test_unknown_context_version_is_a_config_error():
    with pytest.raises(ConfigError):
        GradingContext("asg-1", version_id="E")
    with pytest.raises(ConfigError):
        GradingContext("asg-1", version_id="")
