# dexarb/storage.py
import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import List, Optional

import aiofiles
import yaml
from aiocsv import AsyncDictReader, AsyncWriter

from .models import TradeRecord, TradeSettings


# --- SETTINGS ---

class SettingsStore(ABC):
    """Settings persistence. A write is visible to the next get() in the same process."""

    @abstractmethod
    def get(self) -> TradeSettings:
        ...

    @abstractmethod
    def update(self, **changes) -> TradeSettings:
        ...


class InMemorySettingsStore(SettingsStore):
    def __init__(self, settings: Optional[TradeSettings] = None):
        self._settings = (settings or TradeSettings()).validate()

    def get(self) -> TradeSettings:
        return self._settings

    def update(self, **changes) -> TradeSettings:
        self._settings = self._settings.merged(**changes)
        return self._settings


class YamlSettingsStore(InMemorySettingsStore):
    """
    Settings backed by a YAML file. Values in the file override `defaults`;
    a missing file simply yields the defaults.
    """
    def __init__(self, filepath: str, defaults: Optional[TradeSettings] = None):
        self.filepath = filepath
        defaults = defaults or TradeSettings()
        raw = {}
        if os.path.exists(filepath):
            with open(filepath, "r") as f:
                raw = yaml.safe_load(f) or {}
        super().__init__(defaults.merged(**{k: v for k, v in raw.items() if k in defaults.to_dict()}))

    def update(self, **changes) -> TradeSettings:
        # Validation happens in merged(); nothing is written on failure.
        settings = super().update(**changes)
        directory = os.path.dirname(self.filepath)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.filepath, "w") as f:
            yaml.safe_dump(settings.to_dict(), f, sort_keys=False)
        return settings


# --- LEDGER ---

class LedgerStore(ABC):
    @abstractmethod
    async def append(self, record: TradeRecord) -> None:
        ...

    @abstractmethod
    async def load(self) -> List[TradeRecord]:
        ...


class InMemoryLedgerStore(LedgerStore):
    def __init__(self, records: Optional[List[TradeRecord]] = None):
        self.rows: List[TradeRecord] = list(records or [])

    async def append(self, record: TradeRecord) -> None:
        self.rows.append(record)

    async def load(self) -> List[TradeRecord]:
        return list(self.rows)


class CsvLedgerStore(LedgerStore):
    """
    Non-blocking CSV persistence for trade records.
    Decouples disk I/O from the execution path using an asyncio Queue.
    """
    def __init__(self, filepath: str, logger: Optional[logging.Logger] = None):
        self.filepath = filepath
        self.logger = logger or logging.getLogger(__name__)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None

    async def start(self):
        """
        Creates the file with a header row if it is missing, then starts the background writer.
        """
        directory = os.path.dirname(self.filepath)
        if directory and not os.path.exists(directory):
            os.makedirs(directory, exist_ok=True)

        if not os.path.exists(self.filepath) or os.path.getsize(self.filepath) == 0:
            async with aiofiles.open(self.filepath, mode='w', newline='') as f:
                writer = AsyncWriter(f, dialect='unix')
                await writer.writerow(TradeRecord.CSV_FIELDS)

        self._worker_task = asyncio.create_task(self._writer_worker())

    async def append(self, record: TradeRecord) -> None:
        if self._worker_task is None:
            await self.start()
        await self._queue.put(record.to_row())

    async def load(self) -> List[TradeRecord]:
        if not os.path.exists(self.filepath):
            return []
        records = []
        async with aiofiles.open(self.filepath, mode='r', newline='') as f:
            async for row in AsyncDictReader(f):
                records.append(TradeRecord.from_row(row))
        return records

    async def _writer_worker(self):
        """
        Background consumer that appends rows to disk.
        """
        while True:
            row = await self._queue.get()
            try:
                async with aiofiles.open(self.filepath, mode='a', newline='') as f:
                    writer = AsyncWriter(f, dialect='unix')
                    await writer.writerow(row)
            except OSError as e:
                # The in-memory ledger stays authoritative; don't fail the trade.
                self.logger.error(f"LEDGER WRITE FAILURE for {row[0]}: {e}")
            finally:
                self._queue.task_done()

    async def flush(self):
        await self._queue.join()

    async def close(self):
        if self._worker_task is None:
            return
        await self.flush()
        self._worker_task.cancel()
        try:
            await self._worker_task
        except asyncio.CancelledError:
            pass
        self._worker_task = None
