# tests/test_retry_config.py
from infra.retry import RetryConfig


def test_constructors():
    assert RetryConfig.infinite() == RetryConfig(0, 10.0)
    assert RetryConfig.with_max_retries(3).max_retries == 3
    assert RetryConfig.with_delay(2.5).delay_seconds == 2.5
    cfg = RetryConfig.with_max_retries_and_delay(4, 1.0)
    assert (cfg.max_retries, cfg.delay_seconds) == (4, 1.0)


def test_exhausted_is_bounded_by_max_retries():
    cfg = RetryConfig.with_max_retries(2)
    assert not cfg.exhausted(1)
    assert not cfg.exhausted(2)
    assert cfg.exhausted(3)


def test_zero_means_unbounded():
    cfg = RetryConfig.infinite()
    assert cfg.is_unbounded
    assert not cfg.exhausted(10_000)


def test_from_env(monkeypatch):
    monkeypatch.setenv("MAX_RETRY_COUNT", "5")
    monkeypatch.setenv("RETRY_DELAY_SECS", "3")
    assert RetryConfig.from_env() == RetryConfig(5, 3.0)

    monkeypatch.delenv("MAX_RETRY_COUNT")
    monkeypatch.delenv("RETRY_DELAY_SECS")
    assert RetryConfig.from_env() == RetryConfig.infinite()
