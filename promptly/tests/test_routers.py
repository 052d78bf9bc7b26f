import tempfile
import unittest
from pathlib import Path
from types import SimpleNamespace

from fastapi import HTTPException

from promptly.cache.provider import ProviderError
from promptly.models import AddProjectRequest, ChatRequest, EditProjectRequest
from promptly.routers import cache as cache_routes
from promptly.routers import chat as chat_routes
from promptly.routers import projects as project_routes
from promptly.routers.common import RateLimiter, client_ip, to_http_error
from promptly.tests.fakes import make_context


def _request(context, session_id: str | None = "client-1", forwarded: str | None = None, host: str = "10.0.0.1"):
    headers = {}
    if session_id is not None:
        headers["x-session-id"] = session_id
    if forwarded is not None:
        headers["x-forwarded-for"] = forwarded
    return SimpleNamespace(
        headers=headers,
        client=SimpleNamespace(host=host),
        app=SimpleNamespace(state=SimpleNamespace(context=context)),
    )


class RateLimiterTests(unittest.TestCase):
    def test_sliding_window(self) -> None:
        limiter = RateLimiter(2, 60)
        self.assertTrue(limiter.allow("a", now=0))
        self.assertTrue(limiter.allow("a", now=1))
        self.assertFalse(limiter.allow("a", now=2))
        self.assertTrue(limiter.allow("b", now=2))
        self.assertTrue(limiter.allow("a", now=60))

    def test_idle_keys_are_dropped(self) -> None:
        limiter = RateLimiter(2, 60)
        for index in range(50):
            limiter.allow(f"10.0.0.{index}", now=index)
        self.assertEqual(limiter.tracked_keys, 50)
        limiter.allow("10.0.1.1", now=200)
        self.assertEqual(limiter.tracked_keys, 1)

    def test_forwarded_header_ignored_unless_trusted(self) -> None:
        request = _request(None, forwarded="1.1.1.1")
        self.assertEqual(client_ip(request, trust_forwarded=False), "10.0.0.1")
        self.assertEqual(client_ip(request, trust_forwarded=True), "1.1.1.1")

    def test_client_ip_prefers_forwarded_header(self) -> None:
        self.assertEqual(client_ip(_request(None, forwarded="1.1.1.1, 2.2.2.2"), trust_forwarded=True), "1.1.1.1")
        self.assertEqual(client_ip(_request(None)), "10.0.0.1")

    def test_unexpected_errors_become_500(self) -> None:
        with self.assertLogs("promptly.api", level="ERROR"):
            error = to_http_error(RuntimeError("boom"))
        self.assertEqual(error.status_code, 500)
        self.assertNotIn("boom", error.detail)


class RouterTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.context = make_context(Path(self._tmp.name))
        project_routes.project_rate_limiter.reset()
        self.request = _request(self.context)
        info = await project_routes.add_project(
            self.request, AddProjectRequest(gitUrl="https://github.com/acme/app.git")
        )
        self.project_id = info.id

    async def asyncTearDown(self) -> None:
        project_routes.project_rate_limiter.reset()
        self._tmp.cleanup()

    async def _status_of(self, awaitable) -> int:
        with self.assertRaises(HTTPException) as caught:
            await awaitable
        return caught.exception.status_code

    async def test_project_crud(self) -> None:
        listed = project_routes.list_projects(self.request)
        self.assertEqual([p.id for p in listed], [self.project_id])
        self.assertEqual(project_routes.get_project(self.request, self.project_id).cacheName, "cachedContents/c1")

        updated = await project_routes.update_project(
            self.request, self.project_id, EditProjectRequest(gitUrl="https://github.com/acme/app.git", branch="dev")
        )
        self.assertEqual(updated.branch, "dev")

        removed = await project_routes.remove_project(self.request, updated.id, deleteCheckout=False)
        self.assertTrue(removed.success)
        self.assertEqual(project_routes.list_projects(self.request), [])

    async def test_invalid_project_input_is_400(self) -> None:
        status = await self._status_of(
            project_routes.add_project(
                self.request, AddProjectRequest(gitUrl="git@github.com:acme/x.git", accessToken="tok")
            )
        )
        self.assertEqual(status, 400)

    async def test_duplicate_project_is_400(self) -> None:
        status = await self._status_of(
            project_routes.add_project(self.request, AddProjectRequest(gitUrl="https://github.com/acme/app"))
        )
        self.assertEqual(status, 400)

    async def test_unknown_project_is_404(self) -> None:
        with self.assertRaises(HTTPException) as caught:
            project_routes.get_project(self.request, "missing")
        self.assertEqual(caught.exception.status_code, 404)
        status = await self._status_of(
            chat_routes.send_chat_message(self.request, "enhance", "missing", ChatRequest(message="hi"))
        )
        self.assertEqual(status, 404)

    async def test_project_additions_are_rate_limited_per_client(self) -> None:
        for index in range(2):
            await project_routes.add_project(
                self.request, AddProjectRequest(gitUrl=f"https://github.com/acme/extra{index}.git")
            )
        status = await self._status_of(
            project_routes.add_project(self.request, AddProjectRequest(gitUrl="https://github.com/acme/more.git"))
        )
        self.assertEqual(status, 429)
        other = _request(self.context, host="10.0.0.2")
        await project_routes.add_project(other, AddProjectRequest(gitUrl="https://github.com/acme/more.git"))

    async def test_chat_turn_and_session_endpoints(self) -> None:
        reply = await chat_routes.send_chat_message(
            self.request, "enhance", self.project_id, ChatRequest(message="add search")
        )
        self.assertEqual(reply.response, "reply to add search")
        self.assertEqual(reply.sessionId, "client-1")

        info = chat_routes.get_session_info(self.request, projectId=self.project_id, mode="enhance")
        self.assertEqual(info.messageCount, 2)
        history = chat_routes.get_session_history(self.request, projectId=self.project_id, mode="enhance")
        self.assertEqual(history.messageCount, 2)

        cleared = chat_routes.clear_session(self.request, projectId=self.project_id, mode=None)
        self.assertEqual(cleared.clearedSessions, 1)

    async def test_chat_requires_session_header(self) -> None:
        request = _request(self.context, session_id=None)
        status = await self._status_of(
            chat_routes.send_chat_message(request, "enhance", self.project_id, ChatRequest(message="hi"))
        )
        self.assertEqual(status, 400)

    async def test_project_not_ready_is_409(self) -> None:
        self.context.git.fail_clone.add("https://github.com/acme/broken.git")
        broken = await project_routes.add_project(
            self.request, AddProjectRequest(gitUrl="https://github.com/acme/broken.git")
        )
        self.assertEqual(broken.status, "error")
        status = await self._status_of(
            chat_routes.send_chat_message(self.request, "ask", broken.id, ChatRequest(message="hi"))
        )
        self.assertEqual(status, 409)

    async def test_provider_failure_is_502(self) -> None:
        self.context.provider.send_errors.append(ProviderError("backend unavailable", status_code=500))
        with self.assertLogs("promptly.api", level="ERROR"):
            status = await self._status_of(
                chat_routes.send_chat_message(self.request, "enhance", self.project_id, ChatRequest(message="hi"))
            )
        self.assertEqual(status, 502)

    async def test_missing_context_is_503(self) -> None:
        request = _request(None)
        with self.assertRaises(HTTPException) as caught:
            project_routes.list_projects(request)
        self.assertEqual(caught.exception.status_code, 503)

    async def test_cache_refresh_diagnostics_and_sync(self) -> None:
        refreshed = await cache_routes.refresh_cache(self.request, projectId=self.project_id)
        self.assertEqual(refreshed.cachedContentName, "cachedContents/c2")

        diagnostics = cache_routes.get_diagnostics(self.request)
        self.assertEqual(diagnostics["cacheBuilds"], 2)
        self.assertEqual(diagnostics["projects"][0]["cacheName"], "cachedContents/c2")
        self.assertFalse(diagnostics["repoWatcher"]["running"])

        tick = await cache_routes.trigger_sync(self.request)
        self.assertEqual(tick["trigger"], "api")
        self.assertEqual(tick["status"], "completed")
        self.assertEqual(tick["checked"], 1)

    async def test_project_history_is_empty_without_store(self) -> None:
        entries = await project_routes.project_history(self.request, self.project_id, mode=None, limit=10)
        self.assertEqual(entries, [])


if __name__ == "__main__":
    unittest.main()
