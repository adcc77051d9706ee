import pytest
from sqlalchemy import func, select

from db import SqlStore, VoiceLineKey, models, session_scope
from db.session import make_session_factory
from voxline.errors import StoreError
from voxline.voices import VoiceReference

META = {"format": "wav", "sample_rate": 48000, "loudness_lufs": -18.0, "duration_s": 1.2, "peak_dbfs": -3.0}


@pytest.fixture
def store(tmp_path):
    s = SqlStore(f"sqlite:///{tmp_path / 'db' / 'store.db'}")
    yield s
    s.close()


def _count(store: SqlStore, model) -> int:
    with session_scope(make_session_factory(store.engine)) as session:
        return session.scalar(select(func.count()).select_from(model))


def _artifact(tmp_path, name: str):
    p = tmp_path / "lines" / name
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_bytes(b"RIFF")
    return p


def test_create_character_is_idempotent(store):
    a = store.create_character("Guard", "male", VoiceReference("alice"))
    b = store.create_character("Guard", "male", VoiceReference("bob"))
    assert a == b
    assert b.voice == VoiceReference("alice")
    assert store.find_character("Guard", "male") == a
    assert store.find_character("Guard", "female") is None
    assert store.get_character(a.id) == a


def test_same_name_different_gender_is_distinct(store):
    a = store.create_character("Sam", "male", VoiceReference("alice"))
    b = store.create_character("Sam", "female", VoiceReference("carol"))
    assert a.id != b.id


def test_upsert_dialogue_idempotent_on_exact_text(store):
    char = store.create_character("Guard", "", VoiceReference("alice"))
    first = store.upsert_dialogue(char.id, "Halt!")
    assert store.upsert_dialogue(char.id, "Halt!") == first
    other = store.upsert_dialogue(char.id, "Move along.")
    assert other != first
    assert [c.text for c in store.list_dialogue(char.id)] == ["Halt!", "Move along."]


def test_replace_voice_line_overwrites_and_collects_old_file(store, tmp_path):
    char = store.create_character("Guard", "", VoiceReference("alice"))
    did = store.upsert_dialogue(char.id, "Halt!")
    key = VoiceLineKey(did, "alice", "global")
    assert store.find_voice_line(key) is None

    old = _artifact(tmp_path, "old.wav")
    rec = store.replace_voice_line(key, old, META)
    assert rec.path == old
    assert rec.metadata["loudness_lufs"] == -18.0

    new = _artifact(tmp_path, "new.wav")
    store.replace_voice_line(key, new, {**META, "duration_s": 2.0})
    found = store.find_voice_line(key)
    assert found.path == new
    assert found.metadata["duration_s"] == 2.0
    assert not old.exists()
    assert new.exists()
    assert _count(store, models.VoiceLine) == 1


def test_voice_lines_keyed_by_voice_and_location(store, tmp_path):
    char = store.create_character("Guard", "", VoiceReference("alice"))
    did = store.upsert_dialogue(char.id, "Halt!")
    store.replace_voice_line(VoiceLineKey(did, "alice", "global"), _artifact(tmp_path, "a.wav"), META)
    store.replace_voice_line(VoiceLineKey(did, "alice", "skyrim"), _artifact(tmp_path, "b.wav"), META)
    store.replace_voice_line(VoiceLineKey(did, "bob", "global"), _artifact(tmp_path, "c.wav"), META)
    assert _count(store, models.VoiceLine) == 3
    assert [r.path.name for r in store.list_voice_lines(VoiceReference("alice", "skyrim"))] == ["b.wav"]
    assert [r.path.name for r in store.list_voice_lines(VoiceReference("alice"))] == ["a.wav"]
    assert store.list_voice_lines(VoiceReference("carol")) == []


def test_set_character_voice_keeps_existing_lines(store, tmp_path):
    char = store.create_character("Guard", "", VoiceReference("alice"))
    did = store.upsert_dialogue(char.id, "Halt!")
    old = _artifact(tmp_path, "alice.wav")
    store.replace_voice_line(VoiceLineKey(did, "alice", "global"), old, META)

    updated = store.set_character_voice(char.id, VoiceReference("guard", "skyrim"))
    assert updated.id == char.id
    assert updated.voice == VoiceReference("guard", "skyrim")
    assert store.find_character("Guard").voice == VoiceReference("guard", "skyrim")
    assert store.find_voice_line(VoiceLineKey(did, "alice", "global")).path == old
    assert old.exists()


def test_set_voice_of_missing_character_is_store_error(store):
    with pytest.raises(StoreError):
        store.set_character_voice(999, VoiceReference("alice"))


def test_delete_character_cascades_rows_and_files(store, tmp_path):
    char = store.create_character("Guard", "", VoiceReference("alice"))
    keep = store.create_character("Jarl", "", VoiceReference("bob"))
    d1 = store.upsert_dialogue(char.id, "Halt!")
    d2 = store.upsert_dialogue(char.id, "Move along.")
    d3 = store.upsert_dialogue(keep.id, "Welcome.")
    f1 = _artifact(tmp_path, "1.wav")
    f2 = _artifact(tmp_path, "2.wav")
    f3 = _artifact(tmp_path, "3.wav")
    store.replace_voice_line(VoiceLineKey(d1, "alice", "global"), f1, META)
    store.replace_voice_line(VoiceLineKey(d2, "alice", "global"), f2, META)
    store.replace_voice_line(VoiceLineKey(d3, "bob", "global"), f3, META)

    assert store.delete_character(char.id) is True
    assert store.find_character("Guard") is None
    assert store.list_dialogue(char.id) == []
    assert store.find_voice_line(VoiceLineKey(d1, "alice", "global")) is None
    assert _count(store, models.Dialogue) == 1
    assert _count(store, models.VoiceLine) == 1
    assert not f1.exists() and not f2.exists()
    assert f3.exists()
    assert store.delete_character(char.id) is False


def test_delete_dialogue_cascades_voice_lines(store, tmp_path):
    char = store.create_character("Guard", "", VoiceReference("alice"))
    did = store.upsert_dialogue(char.id, "Halt!")
    f = _artifact(tmp_path, "x.wav")
    store.replace_voice_line(VoiceLineKey(did, "alice", "global"), f, META)
    assert store.delete_dialogue(did) is True
    assert _count(store, models.VoiceLine) == 0
    assert not f.exists()
    assert store.find_character("Guard") is not None


def test_voice_line_for_missing_dialogue_is_store_error(store, tmp_path):
    with pytest.raises(StoreError):
        store.replace_voice_line(VoiceLineKey(999, "alice", "global"), _artifact(tmp_path, "z.wav"), META)
    assert _count(store, models.VoiceLine) == 0


def test_voice_usage_counts(store):
    store.create_character("A", "", VoiceReference("alice"))
    store.create_character("B", "", VoiceReference("alice"))
    store.create_character("C", "", VoiceReference("guard", "skyrim"))
    assert store.voice_usage_counts() == {
        VoiceReference("alice"): 2,
        VoiceReference("guard", "skyrim"): 1,
    }


def test_in_memory_database_shared_across_threads():
    import threading

    store = SqlStore("sqlite://")
    char = store.create_character("Guard", "", VoiceReference("alice"))
    seen = []
    t = threading.Thread(target=lambda: seen.append(store.find_character("Guard")))
    t.start()
    t.join()
    assert seen == [char]
    store.close()
