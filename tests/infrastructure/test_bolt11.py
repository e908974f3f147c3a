"""
Tests for bolt11 amount decoding.
"""

import pytest

from zap_checkout.infrastructure.bolt11 import Bolt11Decoder, normalize

# BOLT-11 example invoice: 2500u = 250,000 sats, "1 cup coffee"
COFFEE_INVOICE = (
    "lnbc2500u1pvjluezpp5qqqsyqcyq5rqwzqfqqqsyqcyq5rqwzqfqqqsyqcyq5rqwzqfqypqdq5xysxxatsyp3k7enxv4jsxqzpu"
    "aztrnwngzn3kdzw5hydlzf03qdgm2hdq27cqv3agm2awhz5se903vruatfhq77w3ls4evs3ch9zw97j25emudupq63nyw24cg27h2rspfj9srp"
)


class TestNormalize:

    def test_strips_scheme_and_whitespace(self):
        assert normalize("  lightning:" + COFFEE_INVOICE + "\n") == COFFEE_INVOICE

    def test_upper_case_is_folded(self):
        assert normalize("LIGHTNING:" + COFFEE_INVOICE.upper()) == COFFEE_INVOICE

    def test_mixed_case_is_kept(self):
        mixed = "lnbc2500u" + COFFEE_INVOICE[9:].upper()

        assert normalize(mixed) == mixed


class TestBolt11Decoder:

    @pytest.fixture
    def decoder(self) -> Bolt11Decoder:
        return Bolt11Decoder()

    def test_decodes_amount(self, decoder):
        decoded = decoder.decode(COFFEE_INVOICE)

        assert decoded.valid
        assert decoded.amount_msat == 250_000_000
        assert decoded.network == "bitcoin"

    def test_upper_case_and_uri_prefix(self, decoder):
        assert decoder.decode(COFFEE_INVOICE.upper()).amount_msat == 250_000_000
        assert decoder.decode("lightning:" + COFFEE_INVOICE).amount_msat == 250_000_000

    def test_corrupted_checksum(self, decoder):
        corrupted = COFFEE_INVOICE[:-1] + ("q" if COFFEE_INVOICE[-1] != "q" else "p")

        decoded = decoder.decode(corrupted)

        assert not decoded.valid
        assert decoded.amount_msat is None
        assert decoded.error == "undecodable"

    def test_tampered_amount(self, decoder):
        decoded = decoder.decode(COFFEE_INVOICE.replace("lnbc2500u", "lnbc9500u", 1))

        assert not decoded.valid

    @pytest.mark.parametrize(
        "invoice",
        [
            "lnbc2500u" + COFFEE_INVOICE[9:].upper(),
            "nothinghere",
            "lnbc1" + "b" * 120,
            "lnbc1qqqq",
        ],
    )
    def test_structural_errors(self, decoder, invoice):
        decoded = decoder.decode(invoice)

        assert not decoded.valid
        assert decoded.error == "undecodable"
