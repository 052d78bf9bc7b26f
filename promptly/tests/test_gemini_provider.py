import json
import unittest

import httpx

from promptly.cache.gemini import GeminiProvider
from promptly.cache.provider import ProviderError, is_cache_expired_error


def _reply(text: str) -> dict:
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


class GeminiProviderTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.requests: list[httpx.Request] = []
        self.responses: list[httpx.Response] = []

        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return self.responses.pop(0)

        client = httpx.AsyncClient(base_url="https://gemini.test/v1beta", transport=httpx.MockTransport(handler))
        self.provider = GeminiProvider("key-123", model="gemini-test", client=client)

    async def asyncTearDown(self) -> None:
        await self.provider.close()

    def _body(self, index: int) -> dict:
        return json.loads(self.requests[index].content)

    async def test_create_cache_posts_context_and_instruction(self) -> None:
        self.responses.append(httpx.Response(200, json={"name": "cachedContents/abc", "expireTime": "2026-01-01T00:00:00Z"}))

        handle = await self.provider.create_cache("Be helpful", "# PROJECT CONTEXT", 3600)

        self.assertEqual(handle.name, "cachedContents/abc")
        self.assertEqual(handle.expireTime, "2026-01-01T00:00:00Z")
        request = self.requests[0]
        self.assertEqual(request.url.path, "/v1beta/cachedContents")
        self.assertEqual(request.url.params["key"], "key-123")
        body = self._body(0)
        self.assertEqual(body["model"], "models/gemini-test")
        self.assertEqual(body["ttl"], "3600s")
        self.assertEqual(body["systemInstruction"]["parts"][0]["text"], "Be helpful")
        self.assertIn("# PROJECT CONTEXT", body["contents"][0]["parts"][0]["text"])
        self.assertEqual([turn["role"] for turn in body["contents"]], ["user", "model"])

    async def test_send_keeps_turns_only_on_success(self) -> None:
        self.responses.append(httpx.Response(200, json={"name": "cachedContents/abc"}))
        handle = await self.provider.create_cache("Be helpful", "ctx", 60)
        session = self.provider.start_session(handle, "Be helpful")
        self.assertEqual(session.turns, [])

        self.responses.append(httpx.Response(200, json=_reply("first answer")))
        self.assertEqual(await self.provider.send(session, "first"), "first answer")
        self.assertEqual(len(session.turns), 2)
        body = self._body(1)
        self.assertEqual(body["cachedContent"], "cachedContents/abc")
        self.assertEqual(self.requests[1].url.path, "/v1beta/models/gemini-test:generateContent")

        self.responses.append(httpx.Response(500, json={"error": {"status": "INTERNAL", "message": "oops"}}))
        with self.assertRaises(ProviderError):
            await self.provider.send(session, "second")
        self.assertEqual(len(session.turns), 2)

        self.responses.append(httpx.Response(200, json=_reply("third answer")))
        await self.provider.send(session, "third")
        self.assertEqual(len(self._body(3)["contents"]), 3)

    async def test_different_instruction_is_prepended_as_an_exchange(self) -> None:
        self.responses.append(httpx.Response(200, json={"name": "cachedContents/abc"}))
        handle = await self.provider.create_cache("Enhance", "ctx", 60)
        session = self.provider.start_session(handle, "Answer questions")
        self.assertEqual(len(session.turns), 2)
        self.assertIn("Answer questions", session.turns[0]["parts"][0]["text"])

    async def test_expired_cache_response_is_classified(self) -> None:
        self.responses.append(httpx.Response(200, json={"name": "cachedContents/abc"}))
        handle = await self.provider.create_cache("Enhance", "ctx", 60)
        session = self.provider.start_session(handle, "Enhance")
        self.responses.append(
            httpx.Response(
                403,
                json={
                    "error": {
                        "code": 403,
                        "status": "PERMISSION_DENIED",
                        "message": "CachedContent not found (or permission denied)",
                    }
                },
            )
        )
        with self.assertRaises(ProviderError) as ctx:
            await self.provider.send(session, "hello")
        self.assertEqual(ctx.exception.status_code, 403)
        self.assertTrue(is_cache_expired_error(ctx.exception))

    async def test_delete_cache_tolerates_missing_cache(self) -> None:
        self.responses.append(httpx.Response(200, json={"name": "cachedContents/abc"}))
        handle = await self.provider.create_cache("Enhance", "ctx", 60)
        self.responses.append(httpx.Response(404, json={}))
        await self.provider.delete_cache(handle)
        self.assertEqual(self.requests[1].method, "DELETE")
        self.assertEqual(self.requests[1].url.path, "/v1beta/cachedContents/abc")


if __name__ == "__main__":
    unittest.main()
