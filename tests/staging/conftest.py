"""Shared fixtures for staging tests: one backend of each kind per test."""

import pytest
import pytest_asyncio

from staging.models import Message, MessagePayload
from staging.store import JsonStagingBackend, SqlStagingBackend


@pytest_asyncio.fixture(params=["json", "sql"])
async def backend(request, tmp_path):
    if request.param == "json":
        backend = JsonStagingBackend(tmp_path / "staging")
    else:
        backend = SqlStagingBackend(f"sqlite+aiosqlite:///{tmp_path / 'staging.db'}")
    await backend.ensure_schema()
    yield backend
    await backend.close()


@pytest.fixture
def make_message():
    def _make(interface_name="orders", record=None, max_retries=3, **kwargs):
        record = record if record is not None else {"id": "1", "name": "Ann"}
        body = MessagePayload(headers=list(record), record=record).to_body()
        return Message(
            interface_name=interface_name,
            adapter_name=kwargs.pop("adapter_name", "csv_file"),
            body=body,
            max_retries=max_retries,
            **kwargs,
        )

    return _make
