import random
import string

from builders import CHROME_ON_WINDOWS, PUBLIC_ORIGIN, browser_observation

from device_trust_engine import ClientAttributes, RequestObservation
from device_trust_engine.fingerprinting import FingerprintDeriver


def test_fingerprint_is_deterministic():
    deriver = FingerprintDeriver()
    observation = browser_observation()
    first = deriver.derive(observation)

    assert all(deriver.derive(browser_observation()) == first for _ in range(50))
    assert FingerprintDeriver().derive(observation) == first


def test_fingerprint_has_fixed_length_hex_format():
    fingerprint = FingerprintDeriver().derive(RequestObservation(origin="8.8.8.8"))
    assert len(fingerprint) == 32
    assert set(fingerprint) <= set(string.hexdigits.lower())
    assert len(FingerprintDeriver(length=16).derive(RequestObservation(origin="8.8.8.8"))) == 16


def test_identifier_changes_yield_distinct_fingerprints():
    deriver = FingerprintDeriver()
    rng = random.Random(1234)
    identifiers = {
        "".join(rng.choices(string.ascii_letters + string.digits + " /;()", k=rng.randint(1, 120)))
        for _ in range(5000)
    }
    fingerprints = {deriver.derive(RequestObservation(origin=PUBLIC_ORIGIN, identifier=item)) for item in identifiers}
    assert len(fingerprints) == len(identifiers)


def test_absent_fields_keep_their_position():
    deriver = FingerprintDeriver()
    timezone_only = RequestObservation(origin="1.1.1.1", attributes=ClientAttributes(timezone="UTC"))
    platform_only = RequestObservation(origin="1.1.1.1", attributes=ClientAttributes(platform="UTC"))
    assert deriver.derive(timezone_only) != deriver.derive(platform_only)


def test_absent_and_empty_values_differ():
    deriver = FingerprintDeriver()
    absent = RequestObservation(origin="1.1.1.1", attributes=ClientAttributes())
    empty_fonts = RequestObservation(origin="1.1.1.1", attributes=ClientAttributes(fonts=()))
    assert deriver.derive(absent) != deriver.derive(empty_fonts)


def test_separator_characters_cannot_shift_fields():
    deriver = FingerprintDeriver()
    left = RequestObservation(origin="1.1.1.1|x", identifier="agent")
    right = RequestObservation(origin="1.1.1.1", identifier="x|agent")
    assert deriver.derive(left) != deriver.derive(right)


def test_confidence_tracks_populated_surface_but_not_the_hash():
    deriver = FingerprintDeriver()
    bare = RequestObservation(origin=PUBLIC_ORIGIN, identifier=CHROME_ON_WINDOWS)
    assert deriver.confidence(bare) == 0.3
    assert deriver.confidence(browser_observation()) == 1.0
