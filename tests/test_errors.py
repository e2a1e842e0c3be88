import json

from aevon.errors import ErrorResponse, ErrorType


def test_to_dict_omits_missing_details():
    body = ErrorResponse(ErrorType.INVALID_JSON, "bad").to_dict()
    assert body == {"error_type": "invalid_json", "message": "bad"}


def test_to_dict_keeps_details():
    details = {"schema": "api.request", "version": 1}
    body = ErrorResponse(ErrorType.SCHEMA_VALIDATION, "failed", details).to_dict()
    assert body["details"] == details
    assert body["error_type"] == "schema_validation_failed"


def test_to_dict_keeps_empty_but_present_details():
    body = ErrorResponse(ErrorType.INTERNAL, "oops", {}).to_dict()
    assert body["details"] == {}


def test_error_type_round_trips_through_value():
    for kind in ErrorType:
        assert ErrorType(kind.value) is kind


def test_body_round_trips_through_json():
    response = ErrorResponse(ErrorType.DUPLICATE_EVENT, "Event already exists")
    decoded = json.loads(json.dumps(response.to_dict()))
    assert ErrorType(decoded["error_type"]) is ErrorType.DUPLICATE_EVENT
    assert decoded["message"] == "Event already exists"


def test_plain_string_error_type_is_accepted():
    body = ErrorResponse("schema_not_found", "missing").to_dict()
    assert ErrorType(body["error_type"]) is ErrorType.SCHEMA_NOT_FOUND