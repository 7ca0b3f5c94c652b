import pytest

from flagkit.core import (
    ErrorCode,
    Event,
    EventType,
    EvaluationDetails,
    FlagMetadata,
    HookContext,
    ProviderState,
    Reason,
    ResolutionDetail,
    ResolutionError,
)


def test_resolution_error_message_starts_with_code():
    err = ResolutionError(ErrorCode.FLAG_NOT_FOUND, "requested flag not found")
    assert str(err).startswith(ErrorCode.FLAG_NOT_FOUND.value)
    assert str(err).endswith("requested flag not found")
    assert err.code is ErrorCode.FLAG_NOT_FOUND
    assert err.message == "requested flag not found"


def test_resolution_error_equality_by_code_and_message():
    a = ResolutionError(ErrorCode.GENERAL, "boom")
    b = ResolutionError(ErrorCode.GENERAL, "boom")
    c = ResolutionError(ErrorCode.PARSE_ERROR, "boom")
    assert a == b
    assert hash(a) == hash(b)
    assert a != c


def test_resolution_error_can_be_raised():
    err = ResolutionError(ErrorCode.TYPE_MISMATCH, "bad type")
    assert err.code is ErrorCode.TYPE_MISMATCH
    assert err.message == "bad type"
    with pytest.raises(ResolutionError) as info:
        raise err
    assert info.value is err
    assert info.value.code is ErrorCode.TYPE_MISMATCH


def test_resolution_error_accepts_code_string():
    err = ResolutionError(ErrorCode.GENERAL.value, "x")
    assert err.code is ErrorCode.GENERAL


def test_cached_reason_value():
    reason = Reason("CACHED")
    assert reason is Reason.CACHED
    assert str(reason) == "CACHED"
    assert f"{reason}" == "CACHED"


@pytest.mark.parametrize("enum_type", [Reason, ErrorCode, EventType, ProviderState])
def test_enum_round_trip(enum_type):
    for member in enum_type:
        assert enum_type(member.value) is member


METADATA = FlagMetadata(
    {"scope": "7c34165e-fbef-11ed-be56-0242ac120002", "stage": 1, "score": 4.5, "cached": False}
)


def test_flag_metadata_typed_getters():
    assert METADATA.get_string("scope") == "7c34165e-fbef-11ed-be56-0242ac120002"
    assert METADATA.get_int("stage") == 1
    assert METADATA.get_float("score") == 4.5
    assert METADATA.get_bool("cached") is False


def test_flag_metadata_missing_key():
    with pytest.raises(KeyError):
        METADATA.get_string("absent")


@pytest.mark.parametrize(
    "getter, key, right_getter, expected",
    [
        ("get_string", "stage", "get_int", 1),
        ("get_int", "score", "get_float", 4.5),
        ("get_float", "stage", "get_int", 1),
        ("get_bool", "scope", "get_string", "7c34165e-fbef-11ed-be56-0242ac120002"),
        ("get_int", "cached", "get_bool", False),
    ],
)
def test_flag_metadata_type_mismatch(getter, key, right_getter, expected):
    with pytest.raises(TypeError):
        getattr(METADATA, getter)(key)
    assert getattr(METADATA, right_getter)(key) == expected


def test_resolution_detail_wraps_metadata():
    detail = ResolutionDetail(value=True, reason=Reason.STATIC, variant="on", flag_metadata={"scope": "flagd-scope"})
    assert isinstance(detail.flag_metadata, FlagMetadata)
    assert detail.flag_metadata.get_string("scope") == "flagd-scope"
    assert detail.error_code is None


def test_resolution_detail_error_code():
    detail = ResolutionDetail(value=False, error=ResolutionError(ErrorCode.PARSE_ERROR, "bad"))
    assert detail.error_code is ErrorCode.PARSE_ERROR


def test_evaluation_details_metadata_wrapped():
    details = EvaluationDetails(flag_key="flagA", value=True, flag_metadata={"stage": 1})
    assert details.flag_metadata.get_int("stage") == 1


def test_event_flag_changes_are_independent():
    first = Event(provider_name="flagd", event_type=EventType.PROVIDER_READY)
    second = Event(provider_name="flagd", event_type=EventType.PROVIDER_READY)
    first.flag_changes.append("a")
    assert second.flag_changes == []


def test_hook_context_defaults():
    ctx = HookContext(flag_key="flagA")
    assert ctx.flag_key == "flagA"
    assert ctx.provider_metadata.name == ""
    assert dict(ctx.evaluation_context) == {}