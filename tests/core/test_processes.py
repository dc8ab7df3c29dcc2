import asyncio
import threading

import pytest

from claude_relay.core.processes import terminate_process


def test_terminate_without_loop_kills_from_timer_thread(fake_process):
    timer = terminate_process(fake_process, grace_seconds=0.05)
    assert isinstance(timer, threading.Timer)
    assert fake_process.terminate_calls == 1
    timer.join(1.0)
    assert fake_process.kill_calls == 1


def test_timer_thread_skips_kill_after_exit(fake_process):
    timer = terminate_process(fake_process, grace_seconds=0.05)
    fake_process.returncode = -15
    timer.join(1.0)
    assert fake_process.kill_calls == 0


def test_timer_thread_polls_popen_style_handles(fake_process):
    def poll():
        fake_process.returncode = 0
        return 0

    fake_process.poll = poll
    timer = terminate_process(fake_process, grace_seconds=0.05)
    timer.join(1.0)
    assert fake_process.kill_calls == 0


def test_exited_process_is_left_alone(fake_process):
    fake_process.returncode = 0
    terminate_process(fake_process)
    assert fake_process.terminate_calls == 0


@pytest.mark.asyncio
async def test_kill_follows_after_grace(fake_process):
    timer = terminate_process(fake_process, grace_seconds=0.05)
    assert timer is not None
    await asyncio.sleep(0.15)
    assert fake_process.kill_calls == 1


@pytest.mark.asyncio
async def test_kill_skipped_when_child_exits(fake_process):
    terminate_process(fake_process, grace_seconds=0.05)
    fake_process.returncode = -15
    await asyncio.sleep(0.15)
    assert fake_process.kill_calls == 0


@pytest.mark.asyncio
async def test_timer_cancelled_when_wait_returns(fake_process):
    exited = asyncio.Event()

    async def wait() -> int:
        await exited.wait()
        return 0

    fake_process.wait = wait
    timer = terminate_process(fake_process, grace_seconds=0.2)
    exited.set()
    await asyncio.sleep(0.05)
    assert timer.cancelled()
    await asyncio.sleep(0.3)
    assert fake_process.kill_calls == 0


@pytest.mark.asyncio
async def test_vanished_process_is_ignored(fake_process):
    def terminate() -> None:
        raise ProcessLookupError()

    fake_process.terminate = terminate
    assert terminate_process(fake_process) is None
