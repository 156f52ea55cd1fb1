import base64
import json

from device_trust_engine.observation import (
    decode_client_header,
    observation_from_headers,
    parse_client_attributes,
)


def encode(payload) -> str:
    return base64.b64encode(json.dumps(payload).encode()).decode()


def test_parse_accepts_camel_case_client_payload():
    attributes = parse_client_attributes(
        {
            "timezone": "Asia/Seoul",
            "screenResolution": "2560x1440",
            "platform": "MacIntel",
            "plugins": ["PDF Viewer"],
            "fonts": "Helvetica,Menlo,Monaco",
            "canvas": "abc",
            "webgl": "Apple M2",
            "hardwareConcurrency": 10,
            "deviceMemory": 16,
            "cookieEnabled": True,
            "touchSupport": "false",
        }
    )
    assert attributes.screen_resolution == "2560x1440"
    assert attributes.plugins == ("PDF Viewer",)
    assert attributes.fonts == ("Helvetica", "Menlo", "Monaco")
    assert attributes.hardware_concurrency == 10
    assert attributes.device_memory == 16.0
    assert attributes.cookies_enabled is True
    assert attributes.touch_support is False


def test_malformed_values_are_treated_as_absent():
    attributes = parse_client_attributes(
        {
            "timezone": {"nested": True},
            "screen_resolution": {"width": "wide", "height": 900},
            "plugins": 42,
            "hardware_concurrency": "many",
            "device_memory": float("nan"),
            "cookies_enabled": "perhaps",
            "color_depth": -24,
        }
    )
    assert attributes.populated_fields() == ()


def test_non_mapping_payload_yields_empty_attributes():
    assert parse_client_attributes(["not", "a", "mapping"]).populated_fields() == ()
    assert parse_client_attributes(None).populated_fields() == ()


def test_undecodable_header_is_ignored():
    assert decode_client_header(None) == {}
    assert decode_client_header("%%%not-base64%%%") == {}
    assert decode_client_header(base64.b64encode(b"{broken json").decode()) == {}
    assert decode_client_header(encode(["a", "list"])) == {}


def test_observation_from_headers_merges_transport_and_client_signals():
    headers = {
        "User-Agent": "  Mozilla/5.0 (X11; Linux x86_64) Firefox/126.0  ",
        "Accept-Language": "en-US",
        "DNT": "1",
        "X-Device-Fingerprint": encode({"platform": "Linux x86_64", "acceptLanguage": "fr-FR", "canvas": "zz"}),
    }
    observation = observation_from_headers("203.0.113.9", headers)

    assert observation.origin == "203.0.113.9"
    assert observation.identifier == "Mozilla/5.0 (X11; Linux x86_64) Firefox/126.0"
    assert observation.attributes.platform == "Linux x86_64"
    assert observation.attributes.accept_language == "en-US"
    assert observation.attributes.do_not_track is True
    assert observation.attributes.canvas == "zz"


def test_observation_from_headers_without_origin_or_agent():
    observation = observation_from_headers(None, {})
    assert observation.origin == "unknown"
    assert observation.identifier == ""
    assert observation.attributes.populated_fields() == ()


def test_numeric_looking_strings_that_do_not_convert_are_absent():
    attributes = parse_client_attributes(
        {
            "hardwareConcurrency": "²",
            "colorDepth": "1" * 5000,
            "screenResolution": {"width": "٣", "height": "1080"},
            "deviceMemory": "8e",
            "timezone": 10**5000,
        }
    )
    assert attributes.populated_fields() == ()


def test_reasonable_numeric_strings_still_convert():
    attributes = parse_client_attributes({"hardwareConcurrency": " 16 ", "screenResolution": ["2560", 1440]})
    assert attributes.hardware_concurrency == 16
    assert attributes.screen_resolution == "2560x1440"


def test_deeply_nested_header_is_ignored():
    hostile = base64.b64encode(b"[" * 5000 + b"]" * 5000).decode()
    assert decode_client_header(hostile) == {}

    observation = observation_from_headers("203.0.113.9", {"X-Device-Fingerprint": hostile, "User-Agent": "agent"})
    assert observation.attributes.populated_fields() == ()
