"""
Tests for the job dispatcher and the miner coordinator.
"""

import argparse
import asyncio

import pytest

from liberty_miner.job import Job
from liberty_miner.miner import JobDispatcher, LibertyMiner, run_miner
from liberty_miner.mining.errors import (MinerError, ProtocolError,
                                         TransportError)
from liberty_miner.mining.hash_search import chain_digest
from liberty_miner.rpc_client import NodeClient

SEED = b"\x00" * 32
HEADER_HEX = "0x" + "00" * 31 + "01"
SEED_HEX = "0x" + "ab" * 32
MAX_TARGET_HEX = "0x" + "ff" * 32


def make_job(tag, block_number=0):
    return Job(header_hash=bytes([tag]) * 32, seed_hash=SEED, target=1, block_number=block_number)


class RecordingSlot:
    def __init__(self, on_deliver=None):
        self.received = []
        self._on_deliver = on_deliver

    def deliver(self, job):
        self.received.append(job)
        if self._on_deliver is not None:
            self._on_deliver(job)


class ScriptedSource:
    """Returns (or raises) the scripted items in order, repeating the last one."""

    def __init__(self, *items):
        self.items = list(items)
        self.calls = 0

    async def __call__(self):
        item = self.items[min(self.calls, len(self.items) - 1)]
        self.calls += 1
        if isinstance(item, Exception):
            raise item
        return item


async def wait_until(predicate, timeout=15.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


class TestJobDispatcher:
    def test_repeated_job_is_broadcast_once(self):
        """A, A, B yields exactly two broadcasts, each reaching every slot."""
        job_a, job_b = make_job(1), make_job(2)
        slots = [RecordingSlot() for _ in range(3)]

        async def scenario():
            dispatcher = JobDispatcher(ScriptedSource(job_a, job_a, job_b), slots)
            outcomes = [await dispatcher.poll_once() for _ in range(3)]
            return dispatcher, outcomes

        dispatcher, outcomes = asyncio.run(scenario())

        assert outcomes == [True, False, True]
        assert dispatcher.broadcasts == 2
        assert dispatcher.current_job == job_b
        for slot in slots:
            assert slot.received == [job_a, job_b]

    def test_same_header_different_block_is_same_job(self):
        job_a = make_job(1, block_number=10)
        job_a_later = make_job(1, block_number=11)
        slot = RecordingSlot()

        async def scenario():
            dispatcher = JobDispatcher(ScriptedSource(job_a, job_a_later), [slot])
            await dispatcher.poll_once()
            return await dispatcher.poll_once()

        assert asyncio.run(scenario()) is False
        assert slot.received == [job_a]

    def test_fetch_errors_propagate_from_poll_once(self):
        async def scenario():
            dispatcher = JobDispatcher(ScriptedSource(TransportError(message="down")), [RecordingSlot()])
            with pytest.raises(TransportError):
                await dispatcher.poll_once()
            assert dispatcher.current_job is None

        asyncio.run(scenario())

    def test_run_retries_after_fetch_errors(self):
        job_a = make_job(1)
        source = ScriptedSource(
            TransportError(message="connection refused"),
            ProtocolError(message="invalid response from eth_getWork"),
            job_a,
        )

        async def scenario():
            holder = {}
            slot = RecordingSlot(on_deliver=lambda job: holder["dispatcher"].stop())
            dispatcher = JobDispatcher(source, [slot], poll_interval=0.01, retry_delay=0.01)
            holder["dispatcher"] = dispatcher
            await asyncio.wait_for(dispatcher.run(), timeout=5)
            return slot

        slot = asyncio.run(scenario())

        assert source.calls == 3
        assert slot.received == [job_a]

    def test_non_retryable_error_ends_run(self):
        fatal = MinerError(message="node speaks an unknown work format")
        source = ScriptedSource(TransportError(message="connection refused"), fatal)

        async def scenario():
            dispatcher = JobDispatcher(source, [RecordingSlot()], poll_interval=0.01, retry_delay=0.01)
            with pytest.raises(MinerError) as info:
                await asyncio.wait_for(dispatcher.run(), timeout=5)
            return info.value

        assert asyncio.run(scenario()) is fatal
        assert source.calls == 2

    def test_stop_interrupts_poll_sleep(self):
        async def scenario():
            dispatcher = JobDispatcher(ScriptedSource(make_job(1)), [RecordingSlot()], poll_interval=60.0)
            task = asyncio.create_task(dispatcher.run())
            assert await wait_until(lambda: dispatcher.broadcasts == 1)
            dispatcher.stop()
            await asyncio.wait_for(task, timeout=2)

        asyncio.run(scenario())


class TestLibertyMiner:
    def test_rejects_zero_threads(self):
        with pytest.raises(ValueError):
            LibertyMiner(endpoint="http://127.0.0.1:8545", threads=0)

    def test_unreachable_node_is_fatal(self):
        async def scenario():
            miner = LibertyMiner(endpoint="http://127.0.0.1:1", threads=1, request_timeout=2.0)
            with pytest.raises(TransportError):
                await miner.start()
            assert miner.slots == []

        asyncio.run(scenario())

    def test_mines_and_submits_against_node(self, fake_node):
        """Every slot solves the trivially easy job once and submits it."""

        async def scenario():
            async with fake_node([[HEADER_HEX, SEED_HEX, MAX_TARGET_HEX]]) as node:
                miner = LibertyMiner(
                    endpoint=node.url(),
                    threads=2,
                    poll_interval=0.02,
                    seed=7,
                    iterations=3,
                )
                await miner.start()
                try:
                    assert await wait_until(lambda: len(node.submissions) >= 2)
                    # Let the dispatcher poll the unchanged job a few more times.
                    assert await wait_until(lambda: node.calls.count("eth_getWork") >= 4)
                finally:
                    await miner.stop()
                return node, miner

        node, miner = asyncio.run(scenario())

        assert miner.dispatcher.broadcasts == 1
        assert len(node.submissions) == 2
        header = bytes(31) + b"\x01"
        nonces = set()
        for nonce_hex, header_hex, mix_hex in node.submissions:
            assert len(nonce_hex) == 18
            assert header_hex == HEADER_HEX
            nonce = int(nonce_hex, 16)
            assert mix_hex == "0x" + chain_digest(header, nonce, 3).hex()
            nonces.add(nonce)
        assert len(nonces) == 2
        assert all(not slot.is_alive() for slot in miner.slots)

    def test_new_job_reaches_every_slot(self, fake_node):
        other_header = "0x" + "02" * 32

        async def scenario():
            works = [[HEADER_HEX, SEED_HEX, "0x00"], [other_header, SEED_HEX, "0x00"]]
            async with fake_node(works) as node:
                miner = LibertyMiner(endpoint=node.url(), threads=3, poll_interval=0.02, seed=1, iterations=20)
                await miner.start()
                try:
                    assert await wait_until(
                        lambda: all(s.current_job is not None and s.current_job.job_id == other_header for s in miner.slots)
                    )
                    assert all(s.searches_started >= 1 for s in miner.slots)
                finally:
                    await miner.stop()
                return miner

        miner = asyncio.run(scenario())
        assert miner.dispatcher.broadcasts == 2

    def test_dispatcher_crash_stops_the_miner(self, fake_node, monkeypatch):
        async def broken_fetch(self):
            raise RuntimeError("work decoder bug")

        async def scenario():
            async with fake_node([[HEADER_HEX, SEED_HEX, "0x00"]]) as node:
                miner = LibertyMiner(endpoint=node.url(), threads=1, poll_interval=0.02)
                await miner.start()
                try:
                    await asyncio.wait_for(miner.wait_stopped(), timeout=5)
                finally:
                    await miner.stop()
                return miner

        monkeypatch.setattr(NodeClient, "fetch_job", broken_fetch)
        miner = asyncio.run(scenario())

        assert isinstance(miner.failure, RuntimeError)
        assert all(not slot.is_alive() for slot in miner.slots)

    def test_run_miner_raises_fatal_fetch_error(self, fake_node, monkeypatch):
        fatal = MinerError(message="node speaks an unknown work format")

        async def failing_fetch(self):
            raise fatal

        async def scenario():
            async with fake_node([[HEADER_HEX, SEED_HEX, "0x00"]]) as node:
                args = argparse.Namespace(endpoint=node.url(), threads=1)
                with pytest.raises(MinerError) as info:
                    await asyncio.wait_for(run_miner(args), timeout=10)
                return info.value

        monkeypatch.setattr(NodeClient, "fetch_job", failing_fetch)
        assert asyncio.run(scenario()) is fatal
