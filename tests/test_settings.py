import pytest
from pydantic import ValidationError

from api_test_quest.settings import RunSettings


class TestRunSettings:
    def test_defaults(self):
        settings = RunSettings()
        assert settings.request_timeout == 10.0
        assert settings.ready_timeout == 15.0
        assert settings.run_deadline is None

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("QUEST_READY_TIMEOUT", "30")
        monkeypatch.setenv("QUEST_STREAM_APP", "true")
        settings = RunSettings()
        assert settings.ready_timeout == 30.0
        assert settings.stream_app is True

    def test_explicit_values_win(self, monkeypatch):
        monkeypatch.setenv("QUEST_REQUEST_TIMEOUT", "30")
        assert RunSettings(request_timeout=2).request_timeout == 2

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValidationError):
            RunSettings(request_timeout=0)
