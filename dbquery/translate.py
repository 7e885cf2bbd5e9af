"""Prompt-to-SQL translation through an OpenAI-compatible chat-completion API."""

from __future__ import annotations

import json
import logging
import re

import httpx

from .config import LlmSettings
from .errors import InternalError, ValidationError
from .models import SchemaMetadata

LOG = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a SQL expert. Convert natural language queries to PostgreSQL SELECT statements.

Rules:
1. Only generate SELECT statements (read-only queries)
2. Use the provided schema information to determine table and column names
3. Return ONLY the SQL query, no explanations or markdown formatting
4. Use proper PostgreSQL syntax
5. Include appropriate WHERE clauses, JOINs, and aggregations as needed
6. Do not include LIMIT clauses (the system will add them automatically)

Schema Information:
"""

_FENCE_OPEN = re.compile(r"^```[A-Za-z0-9_-]*[ \t]*\n?")
_FENCE_CLOSE = re.compile(r"\n?```\s*$")


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence (```sql ... ```)."""

    stripped = text.strip()
    stripped = _FENCE_OPEN.sub("", stripped, count=1)
    stripped = _FENCE_CLOSE.sub("", stripped, count=1)
    return stripped.strip()


def format_schema_context(schema: SchemaMetadata) -> str:
    """Render schema metadata as the compact text handed to the model."""

    lines = [f"Database: {schema.db_name}", ""]
    if schema.tables:
        lines.append("Tables:")
        for table in schema.tables:
            columns = ", ".join(f"{column.name} ({column.data_type})" for column in table.columns)
            key = f"PK: {', '.join(table.primary_key)}, " if table.primary_key else ""
            lines.append(f"  - {table.name} ({key}columns: {columns})")
    if schema.views:
        if schema.tables:
            lines.append("")
        lines.append("Views:")
        for view in schema.views:
            columns = ", ".join(f"{column.name} ({column.data_type})" for column in view.columns)
            lines.append(f"  - {view.name} (columns: {columns})")
    return "\n".join(lines) + "\n"


class SqlTranslator:
    """Asks the configured model for a single SELECT statement."""

    def __init__(self, settings: LlmSettings, *, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._client = client

    async def generate_sql(self, prompt: str, schema: SchemaMetadata) -> str:
        if not prompt or not prompt.strip():
            raise ValidationError("Prompt cannot be empty")
        if not self._settings.api_key:
            raise InternalError(
                "LLM API key not configured. Please set the LLM_API_KEY environment variable."
            )

        payload = {
            "model": self._settings.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": f"{format_schema_context(schema)}\n\nUser Query: {prompt.strip()}",
                },
            ],
            "temperature": self._settings.temperature,
        }
        LOG.debug("Requesting SQL translation", extra={"connection": schema.db_name, "model": self._settings.model})
        response = await self._post(payload)

        if response.status_code != 200:
            error_text = response.text[:500]
            LOG.error("Translation request failed", extra={"status": response.status_code})
            raise InternalError(f"LLM API returned error {response.status_code}: {error_text}")
        try:
            body = response.json()
            content = body["choices"][0]["message"]["content"]
        except (json.JSONDecodeError, KeyError, IndexError, TypeError) as exc:
            LOG.error("Malformed translation response", extra={"body": response.text[:200]})
            raise InternalError(f"Failed to parse LLM response: {exc}") from exc
        if not isinstance(content, str):
            raise InternalError("LLM response content is not text")

        sql = strip_code_fences(content)
        if not sql:
            raise InternalError("LLM did not generate a valid SQL query")
        return sql

    async def _post(self, payload: dict[str, object]) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {self._settings.api_key}",
            "Content-Type": "application/json",
        }
        try:
            if self._client is not None:
                return await self._client.post(
                    self._settings.api_url, json=payload, headers=headers, timeout=self._settings.timeout
                )
            async with httpx.AsyncClient() as client:
                return await client.post(
                    self._settings.api_url, json=payload, headers=headers, timeout=self._settings.timeout
                )
        except httpx.HTTPError as exc:
            LOG.error("Translation request failed", extra={"error": str(exc)})
            raise InternalError(f"LLM API request failed: {exc}") from exc


__all__ = ["SYSTEM_PROMPT", "SqlTranslator", "format_schema_context", "strip_code_fences"]
