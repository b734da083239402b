import json

import pytest
from models import SceneContext
from orchestration.services.retrieval_service import RetrievalEntry, RetrievalMemory
from processing.voice_profiles import build_default_registry


def _write_index(tmp_path, entries):
    path = tmp_path / "retrieval_index.json"
    path.write_text(json.dumps({"entries": entries}), encoding="utf-8")
    return str(path)


@pytest.fixture
def index_entries():
    return [
        {"speaker": "luigi", "line": "The quad fountain hides a key.", "locationGroup": "QUAD"},
        {"speaker": "luigi", "line": "Quad benches are wet.", "locationGroup": "QUAD"},
        {"speaker": "luigi", "line": "Campus cops patrol the quad.", "locationGroup": "QUAD"},
        {"speaker": "luigi", "line": "Dorm lights flicker.", "locationGroup": "DORM"},
        {"speaker": "sonic", "line": "I partied on a yacht with Candi Marlowe."},
        {"speaker": "sonic", "line": "My lawyer hates rooftops."},
        {"speaker": "sonic", "line": "Limo karaoke is a lifestyle."},
        {"speaker": "sonic", "line": "Studio lots are my playground."},
        {"speaker": "sonic", "line": "Follow me to the stadium, mission time."},
        {"speaker": "tails", "line": "   "},
        {"speaker": "tails"},
        "not an entry",
    ]


@pytest.mark.asyncio
async def test_load_skips_invalid_entries(tmp_path, index_entries):
    memory = RetrievalMemory(build_default_registry(), _write_index(tmp_path, index_entries))
    assert await memory.load() == 9
    assert memory.ready
    assert memory.stats() == {"retrieval_ready": True, "retrieval_entries": 9}


@pytest.mark.asyncio
async def test_missing_index_loads_empty(tmp_path):
    memory = RetrievalMemory(build_default_registry(), str(tmp_path / "missing.json"))
    assert await memory.load() == 0
    assert not memory.ready
    assert memory.retrieve("luigi", SceneContext(), "hi", 4) == []


@pytest.mark.asyncio
async def test_location_pool_and_keyword_ranking(tmp_path, index_entries):
    memory = RetrievalMemory(build_default_registry(), _write_index(tmp_path, index_entries))
    await memory.load()
    results = memory.retrieve("Luigi", SceneContext(location="quad"), "where is the fountain", 4)
    assert len(results) == 3
    assert results[0].line == "The quad fountain hides a key."
    assert all(entry.location_group == "QUAD" for entry in results)


@pytest.mark.asyncio
async def test_small_location_pool_widens_to_speaker(tmp_path, index_entries):
    memory = RetrievalMemory(build_default_registry(), _write_index(tmp_path, index_entries))
    await memory.load()
    results = memory.retrieve("luigi", SceneContext(location="dorms"), "hello", 4)
    assert len(results) == 4
    assert results[0].line == "Dorm lights flicker."


@pytest.mark.asyncio
async def test_sonic_mission_lines_filtered_unless_asked(tmp_path, index_entries):
    memory = RetrievalMemory(build_default_registry(), _write_index(tmp_path, index_entries))
    await memory.load()
    casual = memory.retrieve("sonic", SceneContext(), "tell me a story", 10)
    assert len(casual) == 4
    assert all("stadium" not in entry.line for entry in casual)
    asked = memory.retrieve("sonic", SceneContext(), "what is the mission?", 10)
    assert len(asked) == 5


def test_entry_accepts_alias_and_field_name():
    assert RetrievalEntry(speaker="x", line="y", locationGroup="QUAD").location_group == "QUAD"
    assert RetrievalEntry(speaker="x", line="y", location_group="DORM").location_group == "DORM"
