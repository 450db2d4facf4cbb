import re
import time
import logging
from typing import Any, Callable, Dict, Optional

import requests

from exceptions import GenerationError, LLMError
from safety import DENIED_KEYWORDS

logger = logging.getLogger(__name__)

ERROR_SENTINEL = "ERROR:"

SYSTEM_PROMPT_TEMPLATE = """You are an expert PostgreSQL database assistant. Your task is to convert natural language questions into valid PostgreSQL SQL queries.

IMPORTANT RULES:
1. Generate ONLY SELECT queries - no INSERT, UPDATE, DELETE, DROP, ALTER, or other modification statements
2. Return ONLY the SQL query without any explanation, markdown formatting, or code blocks
3. Use proper PostgreSQL syntax and functions
4. Include appropriate JOINs when multiple tables are involved
5. Use meaningful column aliases for calculated fields
6. Add LIMIT clauses for queries that might return large datasets (default to LIMIT 100 unless user specifies otherwise)
7. Handle NULL values appropriately
8. If the query is ambiguous or cannot be answered with the given schema, return: "ERROR: Unable to generate query - [brief reason]"

Database Schema:
{schema_context}

Generate a SQL query that answers the user's question."""

EXPLAIN_SYSTEM_PROMPT = (
    "You are a database expert. Explain SQL queries in simple, clear language "
    "that non-technical users can understand."
)

_CODE_FENCE = re.compile(r"```[a-zA-Z]*[ \t]*\n?")
_SELECT_TAIL = re.compile(r"\bSELECT\b[\s\S]*", re.IGNORECASE)
_STATEMENT_KEYWORD = re.compile(r"\b(?:" + "|".join(DENIED_KEYWORDS) + r")\b", re.IGNORECASE)


def build_system_prompt(schema_context: str) -> str:
    return SYSTEM_PROMPT_TEMPLATE.format(schema_context=schema_context)


def strip_code_fences(text: str) -> str:
    return _CODE_FENCE.sub("", text).replace("```", "").strip()


def clean_generated_sql(raw_response: Optional[str]) -> str:
    """
    Turn a raw completion into a single SQL candidate.

    Raises GenerationError for an empty completion, an ERROR: sentinel, or a
    reply with no SELECT to rescue. Leading prose before the SELECT is dropped
    unless it holds a modifying keyword. Safety is checked separately.
    """
    text = strip_code_fences(raw_response or "")
    if not text:
        raise GenerationError("The model returned an empty response")
    if text.upper().startswith(ERROR_SENTINEL):
        reason = text[len(ERROR_SENTINEL):].strip()
        raise GenerationError(reason or "The model could not answer the question")
    match = _SELECT_TAIL.search(text)
    if not match:
        raise GenerationError("The model response does not contain a SELECT statement")
    # A SELECT nested in a modifying statement is not rescued; the whole reply goes to the safety gate.
    if _STATEMENT_KEYWORD.search(text[:match.start()]):
        return text
    return match.group(0).strip()


class LLMClient:
    """Client for an OpenAI-compatible chat-completions endpoint (OpenRouter by default)."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        model: str,
        temperature: float = 0.2,
        max_tokens: int = 500,
        retries: int = 3,
        timeout: int = 60,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.retries = max(1, retries)
        self.timeout = timeout
        self.session = session or requests.Session()
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings) -> "LLMClient":
        return cls(
            api_url=settings.LLM_API_URL,
            api_key=settings.LLM_API_KEY,
            model=settings.LLM_MODEL,
            temperature=settings.LLM_TEMPERATURE,
            max_tokens=settings.LLM_MAX_TOKENS,
            retries=settings.LLM_RETRIES,
            timeout=settings.LLM_TIMEOUT,
        )

    def call_llm(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Call the provider, retrying connection errors, timeouts, 429 and 5xx replies."""
        if not self.api_key:
            raise LLMError("LLM_API_KEY is not configured")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        data = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self.temperature if temperature is None else temperature,
            "max_tokens": self.max_tokens if max_tokens is None else max_tokens,
        }

        last_error = None
        for i in range(self.retries):
            logger.debug(f"Calling model provider (attempt {i + 1}/{self.retries})")
            try:
                response = self.session.post(self.api_url, headers=headers, json=data, timeout=self.timeout)
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
                last_error = e
            else:
                if response.status_code in (401, 403):
                    raise LLMError("The model provider rejected the API key")
                if response.status_code == 429 or response.status_code >= 500:
                    last_error = f"HTTP {response.status_code}"
                elif response.status_code >= 400:
                    raise LLMError(f"The model provider refused the request (HTTP {response.status_code})")
                else:
                    try:
                        return response.json()
                    except ValueError as e:
                        raise LLMError("The model provider returned invalid JSON") from e

            logger.warning(f"Model provider error on attempt {i + 1}: {last_error}")
            if i < self.retries - 1:
                self._sleep(2 ** i)

        raise LLMError(f"Failed to reach the model provider after {self.retries} attempts: {last_error}")

    def complete(self, system_prompt: str, user_prompt: str, **kwargs) -> str:
        """Return the text of the first completion choice."""
        payload = self.call_llm(system_prompt, user_prompt, **kwargs)
        try:
            return (payload["choices"][0]["message"]["content"] or "").strip()
        except (KeyError, IndexError, TypeError) as e:
            raise LLMError(f"Unexpected response shape from the model provider: {e}") from e


class SQLGenerator:
    """Asks the model for SQL answering a question against a schema context."""

    def __init__(self, llm_client: LLMClient):
        self.llm_client = llm_client

    def generate(self, question: str, schema_context: str) -> str:
        try:
            raw_response = self.llm_client.complete(build_system_prompt(schema_context), question)
        except LLMError as e:
            raise GenerationError(str(e)) from e
        logger.debug(f"Raw model response: {raw_response}")
        return clean_generated_sql(raw_response)

    def explain(self, sql: str) -> str:
        try:
            return self.llm_client.complete(
                EXPLAIN_SYSTEM_PROMPT,
                f"Explain this SQL query in simple terms:\n\n{sql}",
                temperature=0.3,
                max_tokens=200,
            )
        except LLMError as e:
            logger.warning(f"Could not explain SQL: {e}")
            return "Unable to generate explanation"
