"""Tests for worker runners, builders and the worker registry."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from config.config import AdapterSettings, StagingConfig
from core.errors import ConfigurationError
from staging.adapters import CsvFileAdapter
from staging.models import LockStatus, utc_now
from staging.runners import (
    WORKER_REGISTRY,
    build_destinations,
    build_mailbox,
    build_source,
    delivery_interfaces,
    disable_unhosted_subscriptions,
    disabled_destinations,
    execute_worker_with_shutdown,
    load_receiver,
    run_delivery_worker,
    run_lock_renewal,
    run_reaper,
    run_worker_from_registry,
    stage_file,
)
from staging.transport import QueueReceiver


def _config(tmp_path, **overrides) -> StagingConfig:
    data = {
        "instance_id": "host-a",
        "delivery": {"poll_interval_seconds": 0.01},
        "retry": {"max_retries": 4},
        "interfaces": {
            "orders": {
                "deduplicate": True,
                "max_retries": 1,
                "source": {"kind": "csv_file", "name": "orders-drop"},
                "destinations": {
                    "erp-1": {"kind": "csv_file", "path": str(tmp_path / "out" / "erp.csv")},
                },
            },
            "audit": {},
        },
    }
    data.update(overrides)
    return StagingConfig.from_dict(data)


def _source_file(tmp_path):
    path = tmp_path / "orders.csv"
    path.write_text("id║name\n1║Ann\n2║Bob\n", encoding="utf-8")
    return path


class TestBuilders:
    def test_delivery_interfaces(self, tmp_path):
        assert delivery_interfaces(_config(tmp_path)) == ["orders"]

    def test_build_destinations(self, tmp_path):
        destinations = build_destinations(_config(tmp_path), "orders")
        assert list(destinations) == ["erp-1"]
        assert isinstance(destinations["erp-1"], CsvFileAdapter)

    def test_disabled_destination_not_built(self, tmp_path):
        config = _config(tmp_path)
        config.get_interface("orders").destinations["erp-2"] = AdapterSettings(
            kind="csv_file", name="erp-legacy", enabled=False
        )

        assert list(build_destinations(config, "orders")) == ["erp-1"]
        assert disabled_destinations(config, "orders") == {"erp-2": "erp-legacy"}

    def test_interface_with_only_disabled_destinations_not_delivered(self, tmp_path):
        config = _config(tmp_path)
        config.get_interface("orders").destinations["erp-1"].enabled = False
        assert delivery_interfaces(config) == []

    def test_build_source(self, tmp_path):
        config = _config(tmp_path)
        assert build_source(config, "orders").name == "orders-drop"
        # No source configured: plain file reader named after the interface
        assert build_source(config, "audit").name == "audit"

    def test_build_mailbox_uses_interface_retries(self, tmp_path):
        backend = MagicMock()
        assert build_mailbox(_config(tmp_path), backend, "orders").max_retries == 1
        assert build_mailbox(_config(tmp_path), backend, "audit").max_retries == 4

    def test_registry_names(self):
        assert set(WORKER_REGISTRY) == {"delivery", "reaper", "lock-renewal"}
        assert WORKER_REGISTRY["delivery"]["per_interface"] is True


class TestLoadReceiver:
    def test_requires_configuration(self, tmp_path):
        with pytest.raises(ConfigurationError, match="required"):
            load_receiver(_config(tmp_path))

    def test_import_failure(self, tmp_path):
        config = _config(tmp_path, locks={"receiver_module": "no.such.module", "receiver_class": "X"})
        with pytest.raises(ConfigurationError, match="Failed to import"):
            load_receiver(config)

    def test_rejects_non_receiver(self, tmp_path):
        config = _config(tmp_path, locks={"receiver_module": "collections", "receiver_class": "OrderedDict"})
        with pytest.raises(ConfigurationError, match="does not implement QueueReceiver"):
            load_receiver(config)


class TestStageFile:
    @pytest.mark.asyncio
    async def test_stages_with_interface_settings(self, backend, tmp_path):
        config = _config(tmp_path)
        path = _source_file(tmp_path)

        result = await stage_file(config, backend, path, "orders")
        again = await stage_file(config, backend, path, "orders")

        assert result.staged == 2
        assert again.message_ids == result.message_ids
        pending = await backend.store.read_pending("orders")
        assert len(pending) == 2
        assert {m.max_retries for m in pending} == {1}
        assert {m.adapter_name for m in pending} == {"orders-drop"}


class TestRunners:
    @pytest.mark.asyncio
    async def test_unknown_worker(self, backend, tmp_path):
        with pytest.raises(ValueError, match="Unknown worker"):
            await run_worker_from_registry("nope", _config(tmp_path), backend, asyncio.Event())

    @pytest.mark.asyncio
    async def test_delivery_needs_destinations(self, backend, tmp_path):
        with pytest.raises(ConfigurationError):
            await run_delivery_worker(_config(tmp_path), backend, asyncio.Event(), "audit")

    @pytest.mark.asyncio
    async def test_delivery_end_to_end(self, backend, tmp_path):
        config = _config(tmp_path)
        await stage_file(config, backend, _source_file(tmp_path), "orders")
        shutdown_event = asyncio.Event()
        asyncio.get_running_loop().call_later(0.5, shutdown_event.set)

        await run_worker_from_registry("delivery", config, backend, shutdown_event)

        output = (tmp_path / "out" / "erp.csv").read_text(encoding="utf-8").splitlines()
        assert output[0] == "id║name"
        assert sorted(output[1:]) == ["1║Ann", "2║Bob"]
        assert await backend.store.read_pending("orders") == []

    @pytest.mark.asyncio
    async def test_disable_unhosted_subscriptions(self, backend, tmp_path):
        config = _config(tmp_path)
        config.get_interface("audit").destinations["bi"] = AdapterSettings(
            kind="csv_file", enabled=False
        )
        await backend.registry.subscribe("bi", "audit", "csv_file")
        await backend.registry.subscribe("erp-1", "orders", "csv_file")

        assert await disable_unhosted_subscriptions(config, backend) == 1
        assert await backend.registry.get_subscriptions("audit") == []
        # Hosted interfaces are left to their delivery workers
        assert len(await backend.registry.get_subscriptions("orders")) == 1

    @pytest.mark.asyncio
    async def test_reaper_runs_until_shutdown(self, backend, tmp_path, make_message):
        message_id = await backend.store.write(make_message())
        await backend.store.acquire_lease(message_id, timedelta(seconds=-5))
        shutdown_event = asyncio.Event()
        asyncio.get_running_loop().call_later(0.2, shutdown_event.set)

        await run_reaper(_config(tmp_path, reaper={"interval_seconds": 0.05}), backend, shutdown_event)

        assert (await backend.store.get(message_id)).status.value == "Pending"

    @pytest.mark.asyncio
    async def test_lock_renewal_reconciles_first(self, backend, tmp_path, make_message):
        message_id = await backend.store.write(make_message())
        await backend.locks.record_lock(
            message_id, "tok", utc_now() + timedelta(minutes=5), instance_id="host-a"
        )
        receiver = AsyncMock(spec=QueueReceiver)
        shutdown_event = asyncio.Event()
        shutdown_event.set()

        await run_lock_renewal(_config(tmp_path), backend, shutdown_event, receiver=receiver)

        receiver.abandon.assert_awaited_once()
        assert (await backend.locks.get_lock(message_id)).status == LockStatus.ABANDONED


class FailingWorker:
    def __init__(self, health_server=None):
        self.health_server = health_server
        self.stop = AsyncMock()

    async def start(self):
        raise RuntimeError("cannot reach destination share")


class TestExecuteWorkerWithShutdown:
    @pytest.mark.asyncio
    async def test_fatal_error_enters_error_mode(self, monkeypatch):
        monkeypatch.setenv("STARTUP_MAX_RETRIES", "1")
        health_server = MagicMock()
        worker = FailingWorker(health_server=health_server)
        shutdown_event = asyncio.Event()
        asyncio.get_running_loop().call_later(0.1, shutdown_event.set)

        await execute_worker_with_shutdown(worker, "delivery", shutdown_event)

        health_server.set_error.assert_called_once()
        assert "cannot reach destination share" in health_server.set_error.call_args.args[0]
        worker.stop.assert_awaited()

    @pytest.mark.asyncio
    async def test_fatal_error_without_health_server_raises(self, monkeypatch):
        monkeypatch.setenv("STARTUP_MAX_RETRIES", "1")
        worker = FailingWorker()

        with pytest.raises(RuntimeError):
            await execute_worker_with_shutdown(worker, "delivery", asyncio.Event())
        worker.stop.assert_awaited_once()
