import pytest

from webchat_translator.settings import RuntimeConfig


@pytest.mark.unit
def test_defaults(monkeypatch, tmp_path):
    monkeypatch.setenv("WEBCHAT_HOME", str(tmp_path))
    for name in ("WEBCHAT_DEBUG_PORT", "WEBCHAT_RESPONSE_TIMEOUT", "WEBCHAT_HEADLESS"):
        monkeypatch.delenv(name, raising=False)
    config = RuntimeConfig()
    assert config.base_dir == str(tmp_path)
    assert config.debug_port == 9333
    assert config.response_deadline == 180.0
    assert config.headless is False
    assert config.api_host == "127.0.0.1"


@pytest.mark.unit
def test_env_overrides_and_invalid_values(monkeypatch):
    monkeypatch.setenv("WEBCHAT_DEBUG_PORT", "9444")
    monkeypatch.setenv("WEBCHAT_HEADLESS", "yes")
    monkeypatch.setenv("WEBCHAT_POLL_INTERVAL", "fast")
    monkeypatch.setenv("WEBCHAT_STABILITY_SAMPLES", "0")
    monkeypatch.setenv("WEBCHAT_TARGET_LANG", "  ")
    config = RuntimeConfig()
    assert config.debug_port == 9444
    assert config.headless is True
    assert config.poll_interval == 1.0
    assert config.stability_samples == 3
    assert config.target_lang == "Korean"


@pytest.mark.unit
def test_policy_thresholds_from_env(monkeypatch):
    monkeypatch.setenv("WEBCHAT_RESET_AFTER_SUCCESSES", "5")
    monkeypatch.setenv("WEBCHAT_LATENCY_HARD_LIMIT_MS", "bogus")
    thresholds = RuntimeConfig().policy_thresholds()
    assert thresholds.max_consecutive_successes == 5
    assert thresholds.max_consecutive_errors == 2
    assert thresholds.latency_hard_limit_ms == 10000.0
