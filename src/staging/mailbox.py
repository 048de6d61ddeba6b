"""
MessageBox: the staging store and subscription registry behind one facade.

Writers stage records through write_record / write_batch; the delivery loop
purges through purge(), which refuses until every enabled subscriber of the
message's interface has a Processed record.
"""

import logging
from datetime import timedelta
from typing import Any, Iterable, Mapping

from pydantic import ValidationError

from staging.models import (
    DEFAULT_MAX_RETRIES,
    AdapterType,
    Message,
    MessagePayload,
    content_hash,
    utc_now,
)
from staging.store.base import StagingStore, SubscriptionRegistry

logger = logging.getLogger(__name__)

DEDUP_WINDOW = timedelta(hours=24)


def _require(value: str, name: str) -> None:
    if not value or not value.strip():
        raise ValueError(f"{name} cannot be empty")


class MessageBox:
    """Facade over StagingStore + SubscriptionRegistry.

    Args:
        store: Message store
        registry: Subscription registry (purge gate)
        max_retries: Retry budget stamped on new messages
        dedup_window: How far back the advisory duplicate check looks
    """

    def __init__(
        self,
        store: StagingStore,
        registry: SubscriptionRegistry,
        max_retries: int = DEFAULT_MAX_RETRIES,
        dedup_window: timedelta = DEDUP_WINDOW,
    ):
        self.store = store
        self.registry = registry
        self.max_retries = max_retries
        self.dedup_window = dedup_window

    def _build_message(
        self,
        interface_name: str,
        adapter_name: str,
        payload: MessagePayload,
        adapter_type: AdapterType,
        adapter_instance_id: str | None,
        max_retries: int | None,
    ) -> Message:
        body = payload.to_body()
        return Message(
            interface_name=interface_name,
            adapter_name=adapter_name,
            body=body,
            adapter_type=adapter_type,
            adapter_instance_id=adapter_instance_id,
            max_retries=self.max_retries if max_retries is None else max_retries,
            message_hash=content_hash(body),
        )

    async def _find_duplicate(self, message: Message) -> Message | None:
        return await self.store.find_by_hash(
            message.message_hash,
            message.interface_name,
            message.adapter_name,
            message.adapter_instance_id,
            since=utc_now() - self.dedup_window,
        )

    async def write_record(
        self,
        interface_name: str,
        adapter_name: str,
        headers: list[str],
        record: Mapping[str, Any],
        adapter_type: AdapterType = AdapterType.SOURCE,
        adapter_instance_id: str | None = None,
        deduplicate: bool = False,
        max_retries: int | None = None,
    ) -> str:
        """Stage one record as a Pending message and return its id.

        With deduplicate=True, an identical message from the same adapter
        staged within the dedup window is returned instead of writing a new one.
        Raises ValueError for records that cannot be converted.
        """
        _require(interface_name, "interface_name")
        _require(adapter_name, "adapter_name")

        try:
            payload = MessagePayload.from_record(headers, record)
        except ValidationError as e:
            raise ValueError(str(e)) from e

        message = self._build_message(
            interface_name, adapter_name, payload, adapter_type, adapter_instance_id, max_retries
        )

        if deduplicate:
            existing = await self._find_duplicate(message)
            if existing is not None:
                logger.info(
                    "Duplicate message detected, returning existing id",
                    extra={"message_id": existing.id, "interface": interface_name},
                )
                return existing.id

        await self.store.write(message)
        logger.debug(
            "Staged message",
            extra={"message_id": message.id, "interface": interface_name, "adapter_name": adapter_name},
        )
        return message.id

    async def write_batch(
        self,
        interface_name: str,
        adapter_name: str,
        headers: list[str],
        records: Iterable[Mapping[str, Any]],
        adapter_type: AdapterType = AdapterType.SOURCE,
        adapter_instance_id: str | None = None,
        deduplicate: bool = False,
        max_retries: int | None = None,
    ) -> list[str]:
        """Debatch records into one message each; returns ids in record order.

        A record that fails conversion is dropped and logged; it never aborts
        the batch, so the result may be shorter than the input.
        """
        _require(interface_name, "interface_name")
        _require(adapter_name, "adapter_name")

        ids: list[str] = []
        to_write: list[Message] = []
        seen: dict[str, str] = {}
        dropped = 0

        for index, record in enumerate(records):
            try:
                payload = MessagePayload.from_record(headers, record)
            except (ValueError, ValidationError) as e:
                dropped += 1
                logger.warning(
                    f"Dropping record {index} during debatching: {e}",
                    extra={"interface": interface_name, "adapter_name": adapter_name},
                )
                continue

            message = self._build_message(
                interface_name, adapter_name, payload, adapter_type, adapter_instance_id, max_retries
            )

            if deduplicate:
                if message.message_hash in seen:
                    ids.append(seen[message.message_hash])
                    continue
                existing = await self._find_duplicate(message)
                if existing is not None:
                    seen[message.message_hash] = existing.id
                    ids.append(existing.id)
                    continue
                seen[message.message_hash] = message.id

            to_write.append(message)
            ids.append(message.id)

        if to_write:
            await self.store.write_many(to_write)

        logger.info(
            f"Debatched {len(ids) + dropped} records into {len(to_write)} messages",
            extra={
                "interface": interface_name,
                "adapter_name": adapter_name,
                "record_count": len(to_write),
            },
        )
        return ids

    async def purge(self, message_id: str) -> bool:
        """Delete the message if every enabled subscriber has processed it.

        Returns False (and leaves the message) otherwise.
        """
        message = await self.store.get(message_id)
        if message is None:
            return False

        if not await self.registry.all_subscribers_done(message_id, message.interface_name):
            pending = await self.registry.pending_subscribers(message_id, message.interface_name)
            logger.debug(
                "Purge refused, subscribers pending",
                extra={"message_id": message_id, "subscriber": ",".join(pending)},
            )
            return False

        purged = await self.store.purge(message_id)
        if purged:
            await self.registry.delete_records(message_id)
            logger.debug("Purged message", extra={"message_id": message_id})
        return purged

    async def ensure_adapter_instance(
        self,
        instance_id: str,
        interface_name: str,
        adapter_name: str,
        enabled: bool = True,
    ) -> None:
        """Bring the destination instance's subscription in line with enabled.

        Safe to call on every start; disabling keeps the subscription row.
        """
        if enabled:
            await self.registry.subscribe(instance_id, interface_name, adapter_name)
        else:
            await self.registry.unsubscribe(instance_id, interface_name)

    @staticmethod
    def extract_payload(message: Message) -> tuple[list[str], dict[str, str]]:
        """Headers and record carried by a message body."""
        payload = message.payload
        return payload.headers, payload.record


__all__ = ["MessageBox", "DEDUP_WINDOW"]
