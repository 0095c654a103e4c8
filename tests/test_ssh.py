import logging

from hft_fleet.remote.ssh import AsyncSshExecutor


def test_known_hosts_file_is_pinned_from_env(monkeypatch):
    monkeypatch.setenv("SSH_KNOWN_HOSTS", "/etc/hft-fleet/known_hosts")

    executor = AsyncSshExecutor.from_env()

    assert executor.known_hosts() == "/etc/hft-fleet/known_hosts"


def test_unverified_host_keys_are_logged_once(monkeypatch, caplog):
    monkeypatch.delenv("SSH_KNOWN_HOSTS", raising=False)
    executor = AsyncSshExecutor.from_env()

    with caplog.at_level(logging.WARNING, logger="hft_fleet.remote.ssh"):
        assert executor.known_hosts() is None
        assert executor.known_hosts() is None

    warnings = [r for r in caplog.records if "host key verification is disabled" in r.getMessage()]
    assert len(warnings) == 1
