import asyncio
import logging
from typing import Dict, List, Optional

from datastore.state_store import StateStore
from models.records import PollTarget, WindUnit
from services.errors import NetworkError
from services.extractor import Extractor
from services.normalizer import Normalizer
from services.poller import PollerService, build_poller
from services.publisher import CONNECTION_STATE, ReadingPublisher
from settings import Settings

SCENARIO_A = "Küche ID 1A2B3C Zeitpunkt 01.01.2024 12:00 Temperatur 21,3 C Luftfeuchte 55%"


class StubFetcher:
    def __init__(self, pages: Dict[str, str], failures: Optional[Dict[str, Exception]] = None) -> None:
        self.pages = pages
        self.failures = failures or {}
        self.calls: List[str] = []
        self.closed = False

    async def fetch(self, phone_id: str) -> str:
        self.calls.append(phone_id)
        if phone_id in self.failures:
            raise self.failures[phone_id]
        return self.pages[phone_id]

    async def close(self) -> None:
        self.closed = True


def _poller(
    fetcher: StubFetcher,
    phone_ids: List[str],
    store: StateStore,
    wind_unit: WindUnit = WindUnit.ms,
    interval: float = 300.0,
) -> PollerService:
    normalizer = Normalizer(wind_unit)
    return PollerService(
        targets=[PollTarget(phone_id=phone_id, interval=interval) for phone_id in phone_ids],
        fetcher=fetcher,  # type: ignore[arg-type]
        extractor=Extractor(normalizer),
        publisher=ReadingPublisher(store=store, normalizer=normalizer),
        interval=interval,
    )


def test_cycle_writes_readings_and_connection() -> None:
    store = StateStore(name="test")
    poller = _poller(StubFetcher({"AAA": SCENARIO_A}), ["AAA"], store)

    report = asyncio.run(poller.run_cycle())

    assert report.connected is True
    assert report.outcomes[0].reading_count == 1
    states = store.scan_states()
    assert states[CONNECTION_STATE].val is True
    assert states["PhoneGroup_AAA.Kuche.temperature"].val == 21.3
    assert states["PhoneGroup_AAA.Kuche.humidity"].val == 55
    assert states["PhoneGroup_AAA.Kuche.id"].val == "1A2B3C"


def test_timeout_on_one_identifier_does_not_stop_the_next(caplog) -> None:
    store = StateStore(name="test")
    fetcher = StubFetcher(
        {"BBB": SCENARIO_A},
        failures={"AAA": NetworkError("Timed out fetching overview for AAA")},
    )
    poller = _poller(fetcher, ["AAA", "BBB"], store)

    with caplog.at_level(logging.ERROR):
        report = asyncio.run(poller.run_cycle())

    assert fetcher.calls == ["AAA", "BBB"]
    assert report.connected is False
    assert report.outcomes[0].fetched is False
    assert report.outcomes[1].reading_count == 1

    states = store.scan_states()
    assert states[CONNECTION_STATE].val is False
    assert not any(path.startswith("PhoneGroup_AAA") for path in states)
    assert store.get_object("PhoneGroup_AAA") is None
    assert states["PhoneGroup_BBB.Kuche.temperature"].val == 21.3
    assert any(getattr(record, "phone_id", None) == "AAA" for record in caplog.records)


def test_wind_speed_is_written_in_beaufort() -> None:
    store = StateStore(name="test")
    page = "Station ID 0B0C0D0E0F01 Windgeschwindigkeit 5 m/s"
    poller = _poller(StubFetcher({"AAA": page}), ["AAA"], store, wind_unit=WindUnit.bft)

    asyncio.run(poller.run_cycle())

    expected = min(12, round((5 / 0.836) ** (2 / 3)))
    state = store.get_state("PhoneGroup_AAA.Station.wind_speed")
    assert state is not None
    assert state.val == expected
    assert store.get_object("PhoneGroup_AAA.Station.wind_speed").common.unit == "Bft"  # type: ignore[union-attr]


def test_empty_page_is_not_fatal(caplog) -> None:
    store = StateStore(name="test")
    poller = _poller(StubFetcher({"AAA": "<html><body>Wartung</body></html>"}), ["AAA"], store)

    with caplog.at_level(logging.WARNING):
        report = asyncio.run(poller.run_cycle())

    assert report.connected is True
    assert report.outcomes[0].reading_count == 0
    assert store.get_state(CONNECTION_STATE).val is True  # type: ignore[union-attr]
    assert any("No sensor readings found" in record.getMessage() for record in caplog.records)


def test_extraction_crash_is_contained(caplog) -> None:
    class ExplodingExtractor(Extractor):
        def extract(self, markup):
            raise RuntimeError("boom")

    store = StateStore(name="test")
    normalizer = Normalizer()
    poller = PollerService(
        targets=[PollTarget("AAA", 300.0), PollTarget("BBB", 300.0)],
        fetcher=StubFetcher({"AAA": SCENARIO_A, "BBB": SCENARIO_A}),  # type: ignore[arg-type]
        extractor=ExplodingExtractor(normalizer),
        publisher=ReadingPublisher(store=store, normalizer=normalizer),
    )

    with caplog.at_level(logging.ERROR):
        report = asyncio.run(poller.run_cycle())

    assert [outcome.error for outcome in report.outcomes] == ["boom", "boom"]
    assert any("Extraction failed" in record.getMessage() for record in caplog.records)


def test_start_runs_immediately_and_stop_cancels_timer() -> None:
    store = StateStore(name="test")
    fetcher = StubFetcher({"AAA": SCENARIO_A})
    poller = _poller(fetcher, ["AAA"], store, interval=3600.0)

    async def scenario() -> None:
        poller.start()
        assert poller.running
        for _ in range(200):
            if store.get_state(CONNECTION_STATE) is not None:
                break
            await asyncio.sleep(0.01)
        await asyncio.wait_for(poller.stop(), timeout=2.0)

    asyncio.run(scenario())

    assert fetcher.calls == ["AAA"]
    assert fetcher.closed is True
    assert poller.running is False
    assert store.get_state("PhoneGroup_AAA.Kuche.temperature").val == 21.3  # type: ignore[union-attr]


def test_start_without_targets_stays_idle(caplog) -> None:
    poller = _poller(StubFetcher({}), [], StateStore(name="test"))

    async def scenario() -> None:
        with caplog.at_level(logging.ERROR):
            poller.start()
        assert poller.running is False
        await poller.stop()

    asyncio.run(scenario())
    assert any("No phone identifiers configured" in record.getMessage() for record in caplog.records)


def test_build_poller_wires_settings() -> None:
    settings = Settings(
        phone_ids=("AAA", "BBB"),
        hostname="measurements.example.test",
        path="/Home/SensorsOverview",
        poll_interval=120.0,
        request_timeout=5.0,
        wind_unit=WindUnit.kmh,
        legacy_post=True,
        show_battery=False,
        show_timestamp=True,
        store_persistence_path=None,
        log_level="INFO",
    )

    poller = build_poller(settings, store=StateStore(name="test"))

    assert [target.phone_id for target in poller.targets] == ["AAA", "BBB"]
    assert poller.interval == 120.0
    assert poller.fetcher.url == "https://measurements.example.test/Home/SensorsOverview"
    assert poller.fetcher.legacy_post is True
    assert poller.fetcher.timeout == 5.0
    assert poller.extractor.normalizer.wind_unit is WindUnit.kmh
    assert poller.publisher.show_battery is False


def test_unwritable_store_does_not_abort_cycle(tmp_path, caplog) -> None:
    # the persistence target is a directory, so every write fails
    store = StateStore(name="test", persistence_path=tmp_path)
    fetcher = StubFetcher({"AAA": SCENARIO_A, "BBB": SCENARIO_A})
    poller = _poller(fetcher, ["AAA", "BBB"], store)

    with caplog.at_level(logging.WARNING):
        report = asyncio.run(poller.run_cycle())

    assert fetcher.calls == ["AAA", "BBB"]
    assert [outcome.fetched for outcome in report.outcomes] == [True, True]
    assert [outcome.written for outcome in report.outcomes] == [0, 0]
    assert store.get_object("PhoneGroup_AAA") is None
    assert store.get_state(CONNECTION_STATE) is None
    assert any(getattr(record, "state_id", None) == CONNECTION_STATE for record in caplog.records)


def test_publish_crash_is_contained(caplog) -> None:
    class ExplodingPublisher(ReadingPublisher):
        def publish(self, phone_id, readings):
            raise RuntimeError("disk on fire")

    store = StateStore(name="test")
    normalizer = Normalizer()
    poller = PollerService(
        targets=[PollTarget("AAA", 300.0), PollTarget("BBB", 300.0)],
        fetcher=StubFetcher({"AAA": SCENARIO_A, "BBB": SCENARIO_A}),  # type: ignore[arg-type]
        extractor=Extractor(normalizer),
        publisher=ExplodingPublisher(store=store, normalizer=normalizer),
    )

    with caplog.at_level(logging.ERROR):
        report = asyncio.run(poller.run_cycle())

    assert [outcome.error for outcome in report.outcomes] == ["disk on fire", "disk on fire"]
    assert report.connected is True
    assert store.get_state(CONNECTION_STATE).val is True  # type: ignore[union-attr]
    assert any("Publishing failed" in record.getMessage() for record in caplog.records)


def test_poller_can_restart_after_stop() -> None:
    store = StateStore(name="test")
    fetcher = StubFetcher({"AAA": SCENARIO_A})
    poller = _poller(fetcher, ["AAA"], store, interval=3600.0)

    async def scenario() -> None:
        for expected_calls in (1, 2):
            poller.start()
            for _ in range(200):
                if len(fetcher.calls) == expected_calls:
                    break
                await asyncio.sleep(0.01)
            await asyncio.wait_for(poller.stop(), timeout=2.0)

    asyncio.run(scenario())

    assert fetcher.calls == ["AAA", "AAA"]
    assert poller.running is False
