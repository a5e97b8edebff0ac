import asyncio

import pytest

from citrea_pay.settings import Settings
from citrea_pay.watcher.latch import SingleFlight
from citrea_pay.watcher.scheduler import PeriodicTask

from conftest import MNEMONIC, SWEEPER


def _settings(**overrides):
    values = {"mnemonic": MNEMONIC, "sweeper_contract_address": SWEEPER}
    values.update(overrides)
    return Settings(_env_file=None, **values)


def test_defaults():
    settings = _settings()
    assert settings.native_symbol == "BTC"
    assert settings.invoice_ttl_seconds == 900
    assert settings.poll_interval_seconds == 2.0
    assert settings.sweep_interval_seconds == 86400.0
    assert settings.start_block == 12820095
    settings.ensure_valid()


def test_reads_environment(monkeypatch):
    monkeypatch.setenv("TOKEN_ADDRESSES", '{"USDC": "0x' + "11" * 20 + '"}')
    monkeypatch.setenv("POLL_INTERVAL_SECONDS", "5")
    settings = _settings()
    assert settings.token_addresses == {"USDC": "0x" + "11" * 20}
    assert settings.poll_interval_seconds == 5.0
    assert settings.is_known_asset("USDC")
    assert settings.is_known_asset("BTC")
    assert not settings.is_known_asset("ETH")


def test_rpc_urls_dedupe():
    settings = _settings(citrea_rpc_url="https://a", citrea_rpc_urls=["https://b", "https://a"])
    assert settings.rpc_urls == ["https://a", "https://b"]


@pytest.mark.parametrize(
    "overrides",
    [
        {"mnemonic": ""},
        {"mnemonic": "only three words"},
        {"sweeper_contract_address": "0x1234"},
        {"token_addresses": {"USDC": "nope"}},
        {"token_addresses": {"BTC": SWEEPER}},
        {"max_sweep_attempts": 0},
    ],
)
def test_invalid_configuration(overrides):
    with pytest.raises(ValueError):
        _settings(**overrides).ensure_valid()


def test_single_flight():
    latch = SingleFlight("job")
    with latch.acquire() as first:
        assert first and latch.running
        with latch.acquire() as second:
            assert second is False
    assert latch.running is False


def test_periodic_task_swallows_job_errors():
    def broken():
        raise RuntimeError("boom")

    assert asyncio.run(PeriodicTask("broken", broken, 1).run_once()) is None
    assert asyncio.run(PeriodicTask("ok", lambda: 7, 1).run_once()) == 7


def test_periodic_task_runs_until_stopped():
    calls = []

    async def scenario():
        task = PeriodicTask("counter", lambda: calls.append(1), 0.01)
        task.start()
        await asyncio.sleep(0.05)
        await task.stop()

    asyncio.run(scenario())
    assert len(calls) >= 1
