import asyncio
import tempfile
import unittest
from pathlib import Path

from promptly.cache.coherence import CacheBuildError, CacheCoherenceManager, ProjectNotReadyError
from promptly.cache.provider import ProviderError
from promptly.models import Project
from promptly.sessions import SessionKey, SessionRegistry
from promptly.tests.fakes import FakeContextBuilder, FakeProvider, expired_cache_error


class CacheCoherenceTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        prompts = root / "prompts"
        prompts.mkdir()
        (prompts / "system-prompt.md").write_text("Enhance prompts for {{PROJECT_DIR}}", encoding="utf-8")
        (prompts / "ask-prompt.md").write_text("Answer questions about {{PROJECT_DIR}}", encoding="utf-8")
        checkout = root / "checkout"
        checkout.mkdir()
        self.project = Project(gitUrl="https://github.com/acme/app.git", path=str(checkout), status="ready")
        self.provider = FakeProvider()
        self.builder = FakeContextBuilder()
        self.sessions = SessionRegistry()
        self.manager = CacheCoherenceManager(self.provider, self.builder, self.sessions, prompts, 3600)
        self.key = SessionKey("client-1", self.project.id, "enhance")

    def tearDown(self) -> None:
        self._tmp.cleanup()

    async def test_missing_cache_is_built_with_rendered_instruction(self) -> None:
        handle = await self.manager.ensure_fresh(self.project)
        self.assertEqual(handle.name, "cachedContents/c1")
        self.assertIs(self.project.cacheHandle, handle)
        self.assertEqual(self.provider.instructions, [f"Enhance prompts for {self.project.path}"])
        self.assertEqual(self.builder.builds, [self.project.path])

    async def test_marking_stale_many_times_rebuilds_once(self) -> None:
        await self.manager.ensure_fresh(self.project)
        for _ in range(5):
            self.manager.mark_stale(self.project)
        await self.manager.ensure_fresh(self.project)
        await self.manager.ensure_fresh(self.project)
        self.assertEqual(self.provider.create_count, 2)
        self.assertFalse(self.project.cacheStale)
        self.assertEqual(self.provider.deleted, ["cachedContents/c1"])

    async def test_concurrent_requests_share_one_rebuild(self) -> None:
        self.provider.create_delay = 0.1
        handles = await asyncio.gather(*(self.manager.ensure_fresh(self.project) for _ in range(4)))
        self.assertEqual(self.provider.create_count, 1)
        self.assertEqual({handle.name for handle in handles}, {"cachedContents/c1"})

    async def test_not_ready_project_is_rejected(self) -> None:
        self.project.status = "error"
        with self.assertRaises(ProjectNotReadyError):
            await self.manager.ensure_fresh(self.project)
        self.assertEqual(self.provider.create_count, 0)

    async def test_build_failure_leaves_project_stale(self) -> None:
        self.provider.create_errors.append(ProviderError("quota exceeded", status_code=429))
        with self.assertRaises(CacheBuildError):
            await self.manager.ensure_fresh(self.project)
        self.assertTrue(self.project.cacheStale)
        self.assertIsNone(self.project.cacheHandle)

    async def test_unexpected_build_error_keeps_project_stale(self) -> None:
        await self.manager.ensure_fresh(self.project)
        self.manager.mark_stale(self.project)
        self.provider.create_errors.append(ValueError("Expecting value: line 1 column 1"))

        with self.assertRaises(CacheBuildError):
            await self.manager.ensure_fresh(self.project)
        self.assertTrue(self.project.cacheStale)

        handle = await self.manager.ensure_fresh(self.project)
        self.assertEqual(handle.name, "cachedContents/c2")

    async def test_cancelled_build_keeps_project_stale(self) -> None:
        await self.manager.ensure_fresh(self.project)
        self.manager.mark_stale(self.project)
        self.provider.create_delay = 0.5

        task = asyncio.create_task(self.manager.ensure_fresh(self.project))
        await asyncio.sleep(0.05)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task

        self.assertTrue(self.project.cacheStale)
        self.assertEqual(self.project.cacheHandle.name, "cachedContents/c1")

    async def test_undecodable_template_falls_back_and_rebuilds(self) -> None:
        await self.manager.ensure_fresh(self.project)
        (self.manager.prompts_dir / "system-prompt.md").write_bytes("Enhance caf\xe9 {{PROJECT_DIR}}".encode("latin-1"))
        self.manager.mark_stale(self.project)

        with self.assertLogs("promptly.cache", level="WARNING"):
            handle = await self.manager.ensure_fresh(self.project)

        self.assertEqual(handle.name, "cachedContents/c2")
        self.assertFalse(self.project.cacheStale)

    async def test_expired_cache_is_rebuilt_and_the_turn_retried_once(self) -> None:
        await self.manager.get_session(self.key, self.project)
        self.provider.send_errors.append(expired_cache_error())

        session, response = await self.manager.send_with_retry(self.key, self.project, "hello")

        self.assertEqual(response, "reply to hello")
        self.assertEqual(self.provider.create_count, 2)
        self.assertEqual(
            self.provider.sent,
            [("cachedContents/c1", "hello"), ("cachedContents/c2", "hello")],
        )
        self.assertEqual(session.cache_name, "cachedContents/c2")

    async def test_expiry_recovery_costs_two_sends_and_one_create(self) -> None:
        await self.manager.ensure_fresh(self.project)
        creates_before = self.provider.create_count
        self.provider.send_errors.append(expired_cache_error())

        await self.manager.send_with_retry(self.key, self.project, "hello")

        self.assertEqual(self.provider.create_count - creates_before, 1)
        self.assertEqual(len(self.provider.sent), 2)

    async def test_second_expiry_failure_is_surfaced(self) -> None:
        await self.manager.ensure_fresh(self.project)
        self.provider.send_errors.extend([expired_cache_error(), expired_cache_error()])
        with self.assertRaises(ProviderError):
            await self.manager.send_with_retry(self.key, self.project, "hello")
        self.assertEqual(len(self.provider.sent), 2)
        self.assertEqual(self.provider.create_count, 2)

    async def test_other_provider_errors_are_not_retried(self) -> None:
        await self.manager.ensure_fresh(self.project)
        self.provider.send_errors.append(ProviderError("backend unavailable", status_code=503))
        with self.assertRaises(ProviderError):
            await self.manager.send_with_retry(self.key, self.project, "hello")
        self.assertEqual(len(self.provider.sent), 1)
        self.assertEqual(self.provider.create_count, 1)

    async def test_no_session_survives_regeneration(self) -> None:
        other_key = SessionKey("client-2", self.project.id, "ask")
        await self.manager.get_session(self.key, self.project)
        await self.manager.get_session(other_key, self.project)
        superseded = self.project.cacheHandle.name

        self.manager.mark_stale(self.project)
        await self.manager.ensure_fresh(self.project)

        self.assertFalse(
            [s for s in self.sessions.sessions() if s.key.project_id == self.project.id and s.cache_name == superseded]
        )
        self.assertEqual(len(self.sessions), 0)

    async def test_expiry_recovery_skips_rebuild_when_cache_already_replaced(self) -> None:
        await self.manager.ensure_fresh(self.project)
        stale_name = self.project.cacheHandle.name
        self.manager.mark_stale(self.project)
        await self.manager.ensure_fresh(self.project)

        handle = await self.manager.handle_provider_expiry(self.project, stale_name)

        self.assertEqual(handle.name, "cachedContents/c2")
        self.assertEqual(self.provider.create_count, 2)

    async def test_ask_sessions_get_the_ask_instruction(self) -> None:
        session = await self.manager.get_session(SessionKey("c", self.project.id, "ask"), self.project)
        self.assertEqual(session.provider_session.system_instruction, f"Answer questions about {self.project.path}")

    async def test_refresh_forces_rebuild_and_reports_cleared_sessions(self) -> None:
        await self.manager.get_session(self.key, self.project)
        handle, cleared = await self.manager.refresh(self.project)
        self.assertEqual(handle.name, "cachedContents/c2")
        self.assertEqual(cleared, 1)


if __name__ == "__main__":
    unittest.main()
