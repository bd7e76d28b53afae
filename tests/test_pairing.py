"""
Tests for the credential manager and pairing payload
"""

import json

import pytest

from pairing import (
    CredentialManager, PairingPayload, encode_payload, decode_payload,
    is_valid_credential, render_qr_svg,
)
from protocol import PairingDecodeError


class TestCredentialManager:

    def test_generated_credentials_are_six_digits(self):
        for _ in range(200):
            value = CredentialManager.generate()
            assert len(value) == 6 and value.isdigit()

    def test_verify_exact_match(self):
        creds = CredentialManager("482913")
        assert creds.verify("482913")
        assert not creds.verify("482914")
        assert not creds.verify("48291")
        assert not creds.verify(482913)
        assert not creds.verify(None)

    def test_leading_zeros_kept(self):
        creds = CredentialManager("000042")
        assert creds.current() == "000042"
        assert not creds.verify("42")

    @pytest.mark.parametrize("value", ["12ab56", "482913\n", "\n482913", "4829131", "\u066482913"])
    def test_rejects_malformed_initial_value(self, value):
        with pytest.raises(ValueError):
            CredentialManager(value)

    @pytest.mark.parametrize("position", range(6))
    def test_one_digit_off_never_verifies(self, position):
        creds = CredentialManager("482913")
        for digit in "0123456789":
            presented = "482913"[:position] + digit + "482913"[position + 1:]
            assert creds.verify(presented) == (presented == "482913")

    def test_trailing_newline_never_verifies(self):
        creds = CredentialManager("482913")
        assert not creds.verify("482913\n")

    def test_rotate_bumps_generation(self):
        creds = CredentialManager("482913")
        gen = creds.generation
        new_value = creds.rotate()
        assert creds.generation == gen + 1
        assert creds.current() == new_value
        assert is_valid_credential(new_value)

    def test_stale_generation_fails_even_with_right_value(self):
        creds = CredentialManager("482913")
        gen = creds.generation
        creds.rotate()
        assert not creds.verify(creds.current(), generation=gen)
        assert creds.verify(creds.current(), generation=creds.generation)


class TestPayload:

    def test_encode_format(self):
        text = encode_payload(PairingPayload("192.168.1.20", "482913"))
        assert json.loads(text) == {"ip": "192.168.1.20", "pin": "482913"}

    def test_decode_accepts_bytes(self):
        payload = decode_payload(b'{"ip":"10.0.0.5","pin":"007700"}')
        assert payload == PairingPayload("10.0.0.5", "007700")

    @pytest.mark.parametrize("address", ["192.168.1.20", "fe80::1c2b:3aff:fe4d:5e6f", "studio-pc.local"])
    @pytest.mark.parametrize("credential", ["000001", "482913", "999999"])
    def test_round_trip(self, address, credential):
        payload = PairingPayload(address, credential)
        assert decode_payload(encode_payload(payload)) == payload

    def test_manager_builds_payload(self):
        creds = CredentialManager("135790")
        assert creds.pairing_payload("192.168.0.2") == PairingPayload("192.168.0.2", "135790")

    @pytest.mark.parametrize("text", [
        "not json",
        "[1, 2]",
        '{"pin":"482913"}',
        '{"ip":"","pin":"482913"}',
        '{"ip":"192.168.1.20","pin":"4829"}',
        '{"ip":"192.168.1.20","pin":482913}',
        b"\xff\xfe",
        '{"ip":"10.0.0.5","pin":"482913\\n"}',
    ])
    def test_decode_rejects_garbage(self, text):
        with pytest.raises(PairingDecodeError):
            decode_payload(text)

    def test_svg_qr_written(self, tmp_path):
        path = render_qr_svg(PairingPayload("192.168.1.20", "482913"), str(tmp_path / "qr" / "pair.svg"))
        content = (tmp_path / "qr" / "pair.svg").read_text()
        assert path.endswith("pair.svg")
        assert "<svg" in content
