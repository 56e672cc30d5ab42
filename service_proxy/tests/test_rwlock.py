"""
Unit tests for the asyncio shared/exclusive lock.
"""

import asyncio

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_proxy.app.caching.rwlock import AsyncRWLock


class TestAsyncRWLock:
    """Test cases for AsyncRWLock."""

    @pytest.mark.asyncio
    async def test_readers_share_the_lock(self):
        lock = AsyncRWLock()
        async with lock.shared():
            async with lock.shared():
                assert lock.readers == 2
        assert lock.readers == 0

    @pytest.mark.asyncio
    async def test_writer_waits_for_readers(self):
        lock = AsyncRWLock()
        order = []

        await lock.acquire_read()

        async def writer():
            async with lock.exclusive():
                order.append("write")

        task = asyncio.create_task(writer())
        await asyncio.sleep(0.01)
        assert order == []
        assert not lock.write_held

        order.append("read-done")
        await lock.release_read()
        await task
        assert order == ["read-done", "write"]

    @pytest.mark.asyncio
    async def test_reader_waits_for_writer(self):
        lock = AsyncRWLock()
        order = []

        await lock.acquire_write()

        async def reader():
            async with lock.shared():
                order.append("read")

        task = asyncio.create_task(reader())
        await asyncio.sleep(0.01)
        assert order == []

        order.append("write-done")
        await lock.release_write()
        await task
        assert order == ["write-done", "read"]

    @pytest.mark.asyncio
    async def test_waiting_writer_blocks_new_readers(self):
        lock = AsyncRWLock()
        order = []

        await lock.acquire_read()

        async def writer():
            async with lock.exclusive():
                order.append("write")

        async def late_reader():
            async with lock.shared():
                order.append("late-read")

        writer_task = asyncio.create_task(writer())
        await asyncio.sleep(0.01)
        reader_task = asyncio.create_task(late_reader())
        await asyncio.sleep(0.01)
        assert order == []

        await lock.release_read()
        await asyncio.gather(writer_task, reader_task)
        assert order == ["write", "late-read"]

    @pytest.mark.asyncio
    async def test_cancelled_writer_releases_waiting_readers(self):
        lock = AsyncRWLock()
        await lock.acquire_read()

        writer_task = asyncio.create_task(lock.acquire_write())
        await asyncio.sleep(0.01)
        writer_task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await writer_task

        await asyncio.wait_for(lock.acquire_read(), timeout=1.0)
        assert lock.readers == 2
