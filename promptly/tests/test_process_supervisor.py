import asyncio
import time
import unittest

from promptly.git.supervisor import (
    CommandError,
    CommandTimeoutError,
    OutputLimitExceededError,
    ProcessSupervisor,
)


class ProcessSupervisorTests(unittest.IsolatedAsyncioTestCase):
    async def test_success_captures_output(self) -> None:
        supervisor = ProcessSupervisor()
        result = await supervisor.run("sh", ["-c", "echo out; echo err >&2"], timeout=10)
        self.assertEqual(result.stdout.strip(), "out")
        self.assertEqual(result.stderr.strip(), "err")
        self.assertEqual(supervisor.active_count, 0)

    async def test_non_zero_exit_carries_diagnostics(self) -> None:
        supervisor = ProcessSupervisor()
        with self.assertRaises(CommandError) as ctx:
            await supervisor.run("sh", ["-c", "echo partial; echo boom >&2; exit 3"], timeout=10)
        self.assertEqual(ctx.exception.exit_code, 3)
        self.assertEqual(ctx.exception.stdout.strip(), "partial")
        self.assertEqual(ctx.exception.stderr.strip(), "boom")
        self.assertFalse(ctx.exception.timed_out)
        self.assertEqual(supervisor.active_count, 0)

    async def test_spawn_failure_is_a_command_error(self) -> None:
        supervisor = ProcessSupervisor()
        with self.assertRaises(CommandError):
            await supervisor.run("promptly-no-such-binary", timeout=5)
        self.assertEqual(supervisor.active_count, 0)

    async def test_timeout_terminates_hanging_command(self) -> None:
        supervisor = ProcessSupervisor(grace_seconds=1.0)
        started = time.monotonic()
        with self.assertRaises(CommandTimeoutError) as ctx:
            await supervisor.run("sh", ["-c", "sleep 30"], timeout=0.3)
        self.assertTrue(ctx.exception.timed_out)
        self.assertLess(time.monotonic() - started, 0.3 + 1.0 + 2.0)
        self.assertEqual(supervisor.active_count, 0)

    async def test_timeout_escalates_to_kill_when_term_is_ignored(self) -> None:
        supervisor = ProcessSupervisor(grace_seconds=0.5)
        started = time.monotonic()
        with self.assertRaises(CommandTimeoutError) as ctx:
            await supervisor.run("sh", ["-c", "trap '' TERM; sleep 30"], timeout=0.3)
        self.assertEqual(ctx.exception.signal_name, "SIGKILL")
        self.assertLess(time.monotonic() - started, 0.3 + 0.5 + 2.0)
        self.assertEqual(supervisor.active_count, 0)

    async def test_output_cap_kills_the_process(self) -> None:
        supervisor = ProcessSupervisor()
        with self.assertRaises(OutputLimitExceededError) as ctx:
            await supervisor.run("sh", ["-c", "yes promptly"], timeout=10, max_output_bytes=4096)
        self.assertEqual(ctx.exception.stream, "stdout")
        self.assertLessEqual(len(ctx.exception.stdout), 4096)
        self.assertIsNotNone(ctx.exception.exit_code)
        self.assertEqual(supervisor.active_count, 0)

    async def test_active_count_tracks_in_flight_commands(self) -> None:
        supervisor = ProcessSupervisor()
        task = asyncio.create_task(supervisor.run("sh", ["-c", "sleep 0.3"], timeout=10))
        await asyncio.sleep(0.1)
        self.assertEqual(supervisor.active_count, 1)
        await task
        self.assertEqual(supervisor.active_count, 0)

    async def test_shutdown_kills_survivors(self) -> None:
        supervisor = ProcessSupervisor()
        task = asyncio.create_task(supervisor.run("sh", ["-c", "sleep 30"], timeout=60))
        await asyncio.sleep(0.1)
        self.assertEqual(supervisor.shutdown(), 1)
        with self.assertRaises(CommandError) as ctx:
            await asyncio.wait_for(task, 5)
        self.assertEqual(ctx.exception.signal_name, "SIGKILL")
        self.assertEqual(supervisor.active_count, 0)

    async def test_argv_in_messages_is_redacted(self) -> None:
        supervisor = ProcessSupervisor()
        with self.assertRaises(CommandError) as ctx:
            await supervisor.run("sh", ["-c", "exit 1", "https://tok@github.com/u/r.git"], timeout=5)
        self.assertNotIn("tok@", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
