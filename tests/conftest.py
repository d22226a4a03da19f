"""Shared fixtures for reelchestra tests."""

from datetime import datetime, timedelta, timezone

import pytest

from reelchestra.compiler import BlueprintCompiler
from reelchestra.ledger import InMemoryJobLedger, SqliteJobLedger
from reelchestra.notifier import InMemoryNotifier
from reelchestra.schemas import OutputConstraints, Treatment


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def reelchestra_home(monkeypatch, tmp_path):
    """Keep every test away from the real ~/.reelchestra."""
    home = tmp_path / "reelchestra_home"
    monkeypatch.setenv("REELCHESTRA_HOME", str(home))
    return home


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 1, 5, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture(params=["memory", "sqlite"])
def ledger(request, clock, tmp_path):
    """Every ledger backend, driven by the fixed clock."""
    if request.param == "memory":
        return InMemoryJobLedger(clock=clock)
    return SqliteJobLedger(tmp_path / "ledger.db", clock=clock)


@pytest.fixture
def notifier():
    return InMemoryNotifier()


@pytest.fixture
def compiler(ledger, notifier):
    return BlueprintCompiler(ledger, notifier=notifier)


@pytest.fixture
def treatment_data():
    """Three 20s scenes; only the first has a presenter."""
    return {
        "title": "How Tides Work",
        "audio_arc": {"mood": "curious"},
        "scenes": [
            {
                "scene_id": "intro",
                "duration_seconds": 20,
                "narration": "Twice a day the sea comes in.",
                "presenter": True,
                "visual_elements": [
                    {"element_id": "shore", "description": "Beach at low tide"},
                    {"element_id": "host", "description": "Presenter on the sand"},
                ],
            },
            {
                "scene_id": "moon",
                "duration_seconds": 20,
                "narration": "The moon pulls the ocean.",
                "audio_cues": ["Low Hum"],
                "visual_elements": [
                    {"element_id": "orbit", "description": "Moon orbit diagram", "kind": "chart"},
                ],
            },
            {
                "scene_id": "outro",
                "duration_seconds": 20,
                "narration": "Next time, look up.",
                "visual_elements": [
                    {"element_id": "sunset", "description": "Beach at sunset"},
                ],
                "transition": "fade",
            },
        ],
    }


@pytest.fixture
def constraints_data():
    return {
        "duration_seconds": 60,
        "aspect_ratio": "16:9",
        "platform": "youtube",
        "tone": "friendly",
        "language": "en",
    }


@pytest.fixture
def treatment(treatment_data):
    return Treatment.from_dict(treatment_data)


@pytest.fixture
def constraints(constraints_data):
    return OutputConstraints.from_dict(constraints_data)
