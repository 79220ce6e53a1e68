from __future__ import annotations

import sys
import unittest
from decimal import Decimal
from pathlib import Path

import requests

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))
sys.path.insert(0, str(ROOT / "tests"))

from fakes import FakeResponse, FakeSession
from inferbot.errors import RateUnavailable
from inferbot.rates import DEFAULT_SOURCE_URL, RateOracle, atoms_to_usd, usd_to_atoms
from inferbot.schemas import RateSnapshot


class Clock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def quote(usd: float, btc: float = 0.0003) -> FakeResponse:
    return FakeResponse(200, {"decred": {"usd": usd, "btc": btc}})


class RateOracleTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = Clock(0.0)
        self.session = FakeSession()
        self.oracle = RateOracle(ttl=300, session=self.session, clock=self.clock)

    def test_fetches_once_within_ttl(self) -> None:
        self.session.add("GET", DEFAULT_SOURCE_URL, quote(25.0))
        first = self.oracle.snapshot()
        self.clock.now = 299
        second = self.oracle.snapshot()
        self.assertIs(first, second)
        self.assertEqual(first.usd_per_unit, Decimal("25.0"))
        self.assertEqual(first.btc_per_unit, Decimal("0.0003"))
        calls = self.session.calls_to("GET", DEFAULT_SOURCE_URL)
        self.assertEqual(len(calls), 1)
        self.assertEqual(calls[0]["params"], {"ids": "decred", "vs_currencies": "usd,btc"})
        self.assertEqual(calls[0]["timeout"], 5)

    def test_refreshes_after_ttl(self) -> None:
        self.session.add("GET", DEFAULT_SOURCE_URL, quote(25.0), quote(30.0))
        self.oracle.snapshot()
        self.clock.now = 301
        self.assertEqual(self.oracle.snapshot().usd_per_unit, Decimal("30.0"))

    def test_stale_rate_served_within_window_then_unavailable(self) -> None:
        self.session.add("GET", DEFAULT_SOURCE_URL, quote(25.0), requests.ConnectionError("down"))
        self.oracle.snapshot()
        self.clock.now = 500
        self.assertEqual(self.oracle.snapshot().usd_per_unit, Decimal("25.0"))
        self.clock.now = 601
        with self.assertRaises(RateUnavailable):
            self.oracle.snapshot()

    def test_unavailable_without_any_snapshot(self) -> None:
        self.session.add("GET", DEFAULT_SOURCE_URL, FakeResponse(503, {"error": "busy"}))
        with self.assertRaises(RateUnavailable):
            self.oracle.snapshot()

    def test_malformed_payload_is_unavailable(self) -> None:
        self.session.add("GET", DEFAULT_SOURCE_URL, FakeResponse(200, {"decred": {}}))
        with self.assertRaises(RateUnavailable):
            self.oracle.snapshot()

    def test_non_object_payload_is_unavailable(self) -> None:
        for payload in ([{"decred": {"usd": 25}}], "25.0", {"decred": [25.0]}):
            with self.subTest(payload=payload):
                session = FakeSession().add("GET", DEFAULT_SOURCE_URL, FakeResponse(200, payload))
                oracle = RateOracle(ttl=300, session=session, clock=self.clock)
                with self.assertRaises(RateUnavailable):
                    oracle.snapshot()


class ConversionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.snapshot = RateSnapshot(usd_per_unit=Decimal("25"), quoted_at=0.0)

    def test_two_cents_at_twenty_five_dollars(self) -> None:
        self.assertEqual(usd_to_atoms(Decimal("0.02"), self.snapshot, 100_000_000), 80_000)

    def test_rounds_up_fractional_atoms(self) -> None:
        snapshot = RateSnapshot(usd_per_unit=Decimal("3"), quoted_at=0.0)
        self.assertEqual(usd_to_atoms(Decimal("1"), snapshot, 100), 34)

    def test_monotonic_in_price(self) -> None:
        prices = [Decimal(cents) / 100 for cents in range(0, 500, 7)]
        atoms = [usd_to_atoms(p, self.snapshot, 100_000_000) for p in prices]
        self.assertEqual(atoms, sorted(atoms))

    def test_atoms_to_usd_inverse_at_exact_values(self) -> None:
        self.assertEqual(atoms_to_usd(80_000, self.snapshot, 100_000_000), Decimal("0.02"))

    def test_oracle_conversion_returns_snapshot_used(self) -> None:
        oracle = RateOracle(session=FakeSession(), clock=lambda: 0.0)
        oracle.set_snapshot(self.snapshot)
        atoms, used = oracle.usd_to_atoms(Decimal("4.00"))
        self.assertEqual(atoms, 16_000_000)
        self.assertIs(used, self.snapshot)


if __name__ == "__main__":
    unittest.main()
