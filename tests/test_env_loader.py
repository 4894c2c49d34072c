import os

from sitemapper.utils.env_loader import load_environment


def test_load_environment_from_custom_file(monkeypatch, tmp_path):
    env_file = tmp_path / "custom.env"
    env_file.write_text("TEST_DATABASE_URL=postgresql://u:p@db/x\nTEST_MAX_PAGES=50\n")

    monkeypatch.delenv("TEST_DATABASE_URL", raising=False)
    monkeypatch.delenv("TEST_MAX_PAGES", raising=False)

    loaded = load_environment(env_file, override=True)

    assert loaded is True
    assert os.getenv("TEST_DATABASE_URL") == "postgresql://u:p@db/x"
    assert os.getenv("TEST_MAX_PAGES") == "50"


def test_load_environment_uses_env_file_variable(monkeypatch, tmp_path):
    env_file = tmp_path / "deploy.env"
    env_file.write_text("TEST_FROM_VARIABLE=yes\n")
    monkeypatch.setenv("SITEMAPPER_ENV_FILE", str(env_file))
    monkeypatch.delenv("TEST_FROM_VARIABLE", raising=False)

    assert load_environment() is True
    assert os.getenv("TEST_FROM_VARIABLE") == "yes"


def test_load_environment_missing_file(tmp_path):
    missing_file = tmp_path / "missing.env"

    loaded = load_environment(missing_file)

    assert loaded is False
