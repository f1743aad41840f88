import json
import unittest

import httpx

from errors import AnalysisServiceError
from analysis.service import AnalysisService, build_prompt
from transfer.models import ReceivedFile


def make_file(data: bytes = b"print('hi')\n", name: str = "script.py") -> ReceivedFile:
    return ReceivedFile(file_id="f", name=name, mime="text/x-python", size=len(data), data=data)


def completion(content):
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class AnalysisServiceTests(unittest.IsolatedAsyncioTestCase):
    def service(self, handler, api_key="sk-test"):
        return AnalysisService(
            api_key=api_key,
            model="gpt-4o",
            url="https://api.example.test/v1/chat/completions",
            transport=httpx.MockTransport(handler),
        )

    async def test_success_returns_content(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=completion("## What it does"))

        summary = await self.service(handler).analyze(make_file())
        self.assertEqual(summary, "## What it does")

        request = seen[0]
        self.assertEqual(request.headers["Authorization"], "Bearer sk-test")
        body = json.loads(request.content)
        self.assertEqual(body["model"], "gpt-4o")
        self.assertEqual(body["messages"][0]["role"], "user")
        self.assertIn('"script.py"', body["messages"][0]["content"])

    async def test_prompt_uses_first_1500_characters(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json=completion("ok"))

        data = ("a" * 1500 + "§" * 50).encode("utf-8")
        await self.service(handler).analyze(make_file(data, "long.txt"))
        prompt = seen[0]["messages"][0]["content"]
        self.assertIn("a" * 1500, prompt)
        self.assertNotIn("§", prompt)

    async def test_missing_api_key(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=completion("ok"))

        service = self.service(handler, api_key="")
        self.assertFalse(service.configured)
        with self.assertRaises(AnalysisServiceError):
            await service.analyze(make_file())
        self.assertEqual(calls, [])

    async def test_http_error_status(self):
        def handler(request):
            return httpx.Response(500, json={"error": "boom"})

        with self.assertRaises(AnalysisServiceError) as ctx:
            await self.service(handler).analyze(make_file())
        self.assertIn("500", str(ctx.exception))

    async def test_network_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with self.assertRaises(AnalysisServiceError):
            await self.service(handler).analyze(make_file())

    async def test_response_without_content(self):
        bodies = [{}, {"choices": []}, {"choices": [{"message": {}}]}, completion(""), completion(None)]
        for body in bodies:
            with self.subTest(body=body):
                service = self.service(lambda request, body=body: httpx.Response(200, json=body))
                with self.assertRaises(AnalysisServiceError):
                    await service.analyze(make_file())

    async def test_invalid_json(self):
        def handler(request):
            return httpx.Response(200, content=b"not json")

        with self.assertRaises(AnalysisServiceError):
            await self.service(handler).analyze(make_file())


class PromptTests(unittest.TestCase):
    def test_prompt_names_file(self):
        prompt = build_prompt("report.md", "quarterly numbers")
        self.assertIn('"report.md"', prompt)
        self.assertIn("quarterly numbers", prompt)
        self.assertIn("Respond in markdown.", prompt)


if __name__ == "__main__":
    unittest.main()
