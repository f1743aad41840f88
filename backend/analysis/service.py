"""
AI summaries for received files via an OpenAI-compatible chat endpoint.
"""

import logging

import httpx

from config import (
    ANALYSIS_PREVIEW_CHARS,
    ANALYSIS_TIMEOUT,
    OPENAI_API_KEY,
    OPENAI_MODEL,
    OPENAI_URL,
)
from errors import AnalysisServiceError
from transfer.models import ReceivedFile

logger = logging.getLogger(__name__)

PROMPT_TEMPLATE = """\
You are an expert AI assistant.

You have received a file named "{name}". Its contents (first {limit} characters) are provided below.

Your task is to analyze the content intelligently. Depending on the type of the file (e.g., text document, programming code, report, or log), do the following:
- If it's a text or report, summarize its key points and determine its purpose.
- If it's a code file, explain what it does and check for potential problems or vulnerabilities.
- If it's a log or data, detect anomalies, patterns, or errors worth mentioning.

Here is the beginning of the file:

{content}

Respond in markdown.
"""


def build_prompt(name: str, content: str) -> str:
    return PROMPT_TEMPLATE.format(
        name=name,
        limit=ANALYSIS_PREVIEW_CHARS,
        content=content[:ANALYSIS_PREVIEW_CHARS],
    )


class AnalysisService:
    """Posts the start of a file to the chat completions API."""

    def __init__(
        self,
        api_key: str = OPENAI_API_KEY,
        model: str = OPENAI_MODEL,
        url: str = OPENAI_URL,
        timeout: float = ANALYSIS_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._url = url
        self._timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def analyze(self, file: ReceivedFile, name: str | None = None) -> str:
        """
        Summarise a file.

        Raises:
            AnalysisServiceError: on any configuration, network or
                response-shape failure.
        """
        if not self._api_key:
            raise AnalysisServiceError("OPENAI_API_KEY is not configured")

        display_name = name or file.name
        body = {
            "model": self._model,
            "messages": [
                {"role": "user", "content": build_prompt(display_name, file.text())}
            ],
        }
        headers = {"Authorization": f"Bearer {self._api_key}"}

        logger.info(f"Requesting analysis of {display_name}")
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.post(self._url, json=body, headers=headers)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            raise AnalysisServiceError(
                f"Analysis service returned HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise AnalysisServiceError(f"Analysis request failed: {e}") from e
        except ValueError as e:
            raise AnalysisServiceError("Analysis service returned invalid JSON") from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise AnalysisServiceError("Analysis response has no content") from e
        if not isinstance(content, str) or not content.strip():
            raise AnalysisServiceError("Analysis response has no content")
        return content
