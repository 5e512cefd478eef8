import pytest

from chronicles import auth, chat, config, realtime, store


@pytest.fixture(autouse=True)
def data_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "DATA_DIR", str(tmp_path))
    monkeypatch.setattr(config, "REQUIRE_EMAIL_CONFIRMATION", False)
    monkeypatch.setattr(config, "LLM_API_KEY", "test-key")
    monkeypatch.setattr(realtime, "hub", realtime.Hub())
    chat.narrator_locks.clear()
    store.load_tables()
    yield tmp_path
    chat.narrator_locks.clear()


@pytest.fixture
def make_user():
    counter = {"n": 0}

    def factory(name=None):
        counter["n"] += 1
        name = name or f"player{counter['n']}"
        return auth.sign_up(f"{name}@example.com", "correct-horse")

    return factory
