from types import MappingProxyType

import pytest
from starlette.datastructures import Headers

from telescope_collector.services.models import LogEntry, RequestDraft
from telescope_collector.services.redaction import (
    DEFAULT_CENSOR,
    WILDCARD,
    RedactOptions,
    create_redactor,
    parse_path,
    redact_entry,
)
from telescope_collector.utils.diagnostics import ConfigurationError


def test_disabled_settings_build_no_redactor():
    assert create_redactor(None) is None
    assert create_redactor(False) is None


def test_default_paths_cover_common_secrets():
    redact = create_redactor(True)

    result = redact(
        {
            "headers": {"authorization": "Bearer x", "set-cookie": "sid=1", "accept": "*/*"},
            "query": {"token": "t", "page": "1"},
            "body": {"password": "p", "email": "a@b.c"},
            "context": {"apiKey": "k"},
        }
    )

    assert result["headers"] == {"authorization": DEFAULT_CENSOR, "set-cookie": DEFAULT_CENSOR, "accept": "*/*"}
    assert result["query"] == {"token": DEFAULT_CENSOR, "page": "1"}
    assert result["body"] == {"password": DEFAULT_CENSOR, "email": "a@b.c"}
    assert result["context"] == {"apiKey": DEFAULT_CENSOR}


def test_extra_paths_extend_defaults():
    redact = create_redactor(["body.card.number", "body.items[*].sku"])

    result = redact({"body": {"password": "p", "card": {"number": "4111"}, "items": [{"sku": "a"}, {"sku": "b"}]}})

    assert result["body"] == {
        "password": DEFAULT_CENSOR,
        "card": {"number": DEFAULT_CENSOR},
        "items": [{"sku": DEFAULT_CENSOR}, {"sku": DEFAULT_CENSOR}],
    }


def test_wildcard_segment_matches_every_key():
    redact = create_redactor(["body.*.secret"])

    result = redact({"body": {"a": {"secret": 1}, "b": {"secret": 2, "keep": 3}}})

    assert result["body"] == {"a": {"secret": DEFAULT_CENSOR}, "b": {"secret": DEFAULT_CENSOR, "keep": 3}}


def test_options_override_censor():
    redact = create_redactor(RedactOptions(paths=("body.pin",), censor="<hidden>"), censor="ignored")

    result = redact({"body": {"pin": "1234", "password": "p"}})

    assert result["body"] == {"pin": "<hidden>", "password": "<hidden>"}


def test_censor_argument_applies_without_options():
    assert create_redactor(True, censor="###")({"body": {"token": "t"}})["body"] == {"token": "###"}


def test_input_is_not_mutated():
    data = {"body": {"password": "p"}}

    create_redactor(True)(data)

    assert data == {"body": {"password": "p"}}


def test_missing_paths_and_non_mapping_values_are_left_alone():
    redact = create_redactor(True)

    assert redact({"body": "raw text", "headers": {}}) == {"body": "raw text", "headers": {}}


@pytest.mark.parametrize(
    ("path", "segments"),
    [
        ("headers.authorization", ("headers", "authorization")),
        ('headers["x-api-key"]', ("headers", "x-api-key")),
        ("headers['set-cookie']", ("headers", "set-cookie")),
        ("body.*.token", ("body", WILDCARD, "token")),
        ("body.items[*]", ("body", "items", WILDCARD)),
    ],
)
def test_parse_path(path, segments):
    assert parse_path(path) == segments


@pytest.mark.parametrize("path", ["", "body.", ".body", "body..x", "headers[x]", 'headers["x"', "body.a b"])
def test_malformed_paths_raise_configuration_error(path):
    with pytest.raises(ConfigurationError):
        parse_path(path)


def test_malformed_extra_path_fails_at_construction():
    with pytest.raises(ConfigurationError):
        create_redactor(["body..password"])


def test_plain_string_setting_is_rejected():
    with pytest.raises(ConfigurationError):
        create_redactor("body.password")


def test_redact_entry_returns_censored_copy(make_log):
    entry = make_log(context={"token": "abc", "user": "ada"})

    redacted = redact_entry(entry, create_redactor(True))

    assert isinstance(redacted, LogEntry)
    assert redacted.context == {"token": DEFAULT_CENSOR, "user": "ada"}
    assert entry.context["token"] == "abc"
    assert redact_entry(entry, None) is entry


def test_header_names_match_regardless_of_case():
    redact = create_redactor(True)

    result = redact(
        {
            "headers": {"Authorization": "Bearer secret", "X-API-Key": "k", "Accept": "*/*"},
            "response_headers": {"Set-Cookie": "sid=1"},
            "body": {"Password": "kept"},
        }
    )

    assert result["headers"] == {"Authorization": DEFAULT_CENSOR, "X-API-Key": DEFAULT_CENSOR, "Accept": "*/*"}
    assert result["response_headers"] == {"Set-Cookie": DEFAULT_CENSOR}
    assert result["body"] == {"Password": "kept"}


def test_read_only_header_mappings_are_censored():
    draft = RequestDraft(
        method="GET",
        path="/",
        url="http://localhost/",
        status=200,
        duration=1.0,
        headers=Headers({"Authorization": "Bearer secret", "Accept": "*/*"}),
        query=MappingProxyType({"token": "t"}),
    )

    redacted = redact_entry(draft, create_redactor(True))

    assert redacted.headers == {"authorization": DEFAULT_CENSOR, "accept": "*/*"}
    assert redacted.query == {"token": DEFAULT_CENSOR}
