#!/usr/bin/env python3
"""
Tests for background jobs: spawning, listing, killing and notifications.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio
import pytest
from vfshell.vfs import FileSystem
from vfshell.executor import CommandExecutor
from vfshell.jobs import CancellationToken, JobManager, JobStatus
from vfshell.errors import JobCancelledError, JobNotFoundError


@pytest.fixture
def executor():
    executor = CommandExecutor(FileSystem(), user='Guest')
    executor.change_directory('/home/Guest')
    return executor


class TestBackgroundCommands:

    def test_spawn_returns_immediately(self, executor):
        async def scenario():
            loop = asyncio.get_running_loop()
            started = loop.time()
            result = await executor.run('sleep 5 &')
            elapsed = loop.time() - started
            listing = await executor.run('jobs')
            await executor.run('kill 1')
            return result, elapsed, listing

        result, elapsed, listing = asyncio.run(scenario())
        assert result.success
        assert result.output == '[1] Backgrounded.'
        assert result.job_id == 1
        assert elapsed < 1
        assert listing.output == '[1] running  sleep 5'

    def test_foreground_continues_after_background(self, executor):
        async def scenario():
            result = await executor.run('sleep 5 & echo next')
            await executor.run('kill %1')
            return result

        assert asyncio.run(scenario()).output == 'next'

    def test_kill_reports_and_notifies(self, executor):
        async def scenario():
            await executor.run('sleep 5 &')
            killed = await executor.run('kill 1')
            remaining = executor.jobs.active()
            return killed, remaining

        killed, remaining = asyncio.run(scenario())
        assert killed.output == 'Signal sent to terminate job 1.'
        assert remaining == []
        assert executor.jobs.drain_notifications() == ['[Job 1 killed]']
        assert executor.jobs.drain_notifications() == []

    def test_finished_notification(self, executor):
        async def scenario():
            await executor.run('delay 10 &')
            await executor.jobs.wait_all()

        asyncio.run(scenario())
        assert executor.jobs.drain_notifications() == ['[Job 1 finished]']

    def test_background_redirect_writes_file(self, executor):
        async def scenario():
            await executor.run('echo later > bg.txt &')
            await executor.jobs.wait_all()

        asyncio.run(scenario())
        assert executor.fs.read_file('/home/Guest/bg.txt', 'Guest') == 'later'

    def test_failed_job_notification(self, executor):
        async def scenario():
            await executor.run('cat missing.txt &')
            await executor.jobs.wait_all()

        asyncio.run(scenario())
        [message] = executor.jobs.drain_notifications()
        assert message.startswith("[Job 1 finished with error: pipeline error for 'cat'")

    def test_background_read_cannot_prompt(self, executor):
        async def scenario():
            result = await executor.run('read X &')
            await executor.jobs.wait_all()
            return result

        assert not asyncio.run(scenario()).needs_input
        [message] = executor.jobs.drain_notifications()
        assert 'finished with error' in message

    def test_kill_unknown_job(self, executor):
        result = asyncio.run(executor.run('kill 9'))
        assert not result.success
        assert 'no such job: 9' in result.error

    def test_kill_bad_id(self, executor):
        assert not asyncio.run(executor.run('kill abc')).success

    def test_ids_are_not_reused(self, executor):
        async def scenario():
            first = await executor.run('delay 1 &')
            await executor.jobs.wait_all()
            second = await executor.run('delay 1 &')
            await executor.jobs.wait_all()
            return first.job_id, second.job_id

        assert asyncio.run(scenario()) == (1, 2)


class TestBackgroundContext:

    def test_redirect_uses_directory_at_spawn(self, executor):
        async def scenario():
            await executor.run('mkdir other')
            await executor.run('cd /home/Guest; echo hi > out.txt & cd other')
            await executor.jobs.wait_all()

        asyncio.run(scenario())
        assert executor.cwd == '/home/Guest/other'
        assert executor.fs.read_file('/home/Guest/out.txt', 'Guest') == 'hi'
        assert executor.fs.find_node('/home/Guest/other/out.txt', 'Guest') is None

    def test_runs_as_user_at_spawn(self, executor):
        async def scenario():
            await executor.run('su')
            await executor.run('echo secret > /etc/motd & exit')
            await executor.jobs.wait_all()

        asyncio.run(scenario())
        assert executor.user == 'Guest'
        motd = executor.fs.get_node('/etc/motd', 'root')
        assert motd.content == 'secret'
        assert motd.owner == 'root'
        assert executor.jobs.drain_notifications() == ['[Job 1 finished]']

    def test_commands_resolve_against_directory_at_spawn(self, executor):
        async def scenario():
            await executor.run('mkdir other; echo data > here.txt')
            await executor.run('cp here.txt copy.txt & cd other')
            await executor.jobs.wait_all()

        asyncio.run(scenario())
        assert executor.fs.read_file('/home/Guest/copy.txt', 'Guest') == 'data'
        assert executor.fs.find_node('/home/Guest/other/copy.txt', 'Guest') is None


class TestJobManager:

    def test_kill_cancels_uncooperative_task(self):
        manager = JobManager(kill_timeout=0.05)

        async def stubborn(token):
            await asyncio.sleep(10)

        async def scenario():
            job_id = manager.spawn('stubborn', stubborn)
            job = await manager.kill(job_id)
            return job

        job = asyncio.run(scenario())
        assert job.status == JobStatus.KILLED
        assert manager.drain_notifications() == ['[Job 1 killed]']

    def test_runner_exception_marks_failure(self):
        manager = JobManager()

        async def broken(token):
            raise RuntimeError('disk on fire')

        async def scenario():
            manager.spawn('broken', broken)
            await manager.wait_all()

        asyncio.run(scenario())
        assert manager.drain_notifications() == ['[Job 1 finished with error: disk on fire]']

    def test_get_unknown(self):
        with pytest.raises(JobNotFoundError):
            JobManager().get(3)


class TestCancellationToken:

    def test_sleep_interrupted(self):
        async def scenario():
            token = CancellationToken()
            asyncio.get_running_loop().call_later(0.01, token.cancel, 'stop')
            with pytest.raises(JobCancelledError):
                await token.sleep(10)
            return token

        token = asyncio.run(scenario())
        assert token.cancelled
        assert token.reason == 'stop'

    def test_sleep_completes(self):
        async def scenario():
            token = CancellationToken()
            await token.sleep(0)
            return token.cancelled

        assert asyncio.run(scenario()) is False
