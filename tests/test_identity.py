import json

from scantron_grader.identity import Identity, parse_identity


def _payload(**overrides):
    data = {"v": 1, "sid": "S42", "secid": "sec-1", "aid": "asg-7", "uid": "unit-3",
            "ver": "B", "var": "dok2", "qc": 20, "dt": "2024-09-01"}
    data.update(overrides)
    return json.dumps(data)


def test_valid_payload_decodes_to_typed_identity():
    outcome = parse_identity(_payload())
    assert outcome.ok
    ident = outcome.identity
    assert ident.student_id == "S42"
    assert ident.assignment_id == "asg-7"
    assert ident.section_id == "sec-1"
    assert ident.unit_id == "unit-3"
    assert ident.version_id == "B"
    assert ident.variant_id == "dok2"
    assert ident.question_count == 20


def test_payload_written_by_to_payload_parses_back():
    ident = Identity(schema_version=1, student_id="S1", assignment_id="a", question_count=5)
    assert parse_identity(ident.to_payload()).identity == ident


def test_schema_version_mismatch_is_a_failure():
    outcome = parse_identity(_payload(v=2))
    assert not outcome.ok
    assert "schema version" in outcome.error


def test_wrong_types_are_rejected_not_coerced():
    assert not parse_identity(_payload(qc="20")).ok
    assert not parse_identity(_payload(sid=42)).ok
    assert not parse_identity(_payload(v="1")).ok


def test_unknown_version_letter_is_rejected():
    assert not parse_identity(_payload(ver="E")).ok


def test_missing_required_field_is_rejected():
    data = json.loads(_payload())
    del data["sid"]
    outcome = parse_identity(json.dumps(data))
    assert not outcome.ok
    assert "sid" in outcome.error


def test_garbage_and_empty_payloads():
    assert parse_identity("not json at all").error
    assert parse_identity("").error == "empty payload"
    assert parse_identity(None).error == "empty payload"
    assert not parse_identity("[1, 2, 3]").ok
