"""HTTP client for the external workflow trigger webhook."""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from shared.config import settings

logger = logging.getLogger(__name__)


@dataclass
class WorkflowResult:
    """Outcome of a webhook call."""
    success: bool
    execution_id: Optional[str] = None
    error: Optional[str] = None


class WorkflowClient:
    """Posts trigger payloads to the workflow engine's webhook."""

    def __init__(self, api_key: Optional[str] = None, timeout: Optional[float] = None):
        self.api_key = api_key if api_key is not None else settings.workflow_api_key
        self.timeout = timeout or settings.workflow_timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def trigger(self, webhook_url: str, payload: Dict[str, Any]) -> WorkflowResult:
        """
        POST `payload` to `webhook_url`.

        Success requires a 2xx JSON response carrying `executionId`. Every
        other outcome, including network errors, is returned as a failure.
        """
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout, headers=self._headers()) as session:
                async with session.post(webhook_url, json=payload) as response:
                    if response.status >= 300:
                        text = await response.text()
                        return WorkflowResult(success=False, error=f"HTTP {response.status}: {text[:200]}")
                    data = await response.json(content_type=None)
        except asyncio.TimeoutError:
            return WorkflowResult(success=False, error=f"Workflow trigger timed out after {self.timeout}s")
        except aiohttp.ClientError as e:
            return WorkflowResult(success=False, error=f"Workflow trigger request failed: {e}")
        except ValueError as e:
            return WorkflowResult(success=False, error=f"Invalid workflow response: {e}")

        execution_id = data.get("executionId") if isinstance(data, dict) else None
        if not execution_id:
            return WorkflowResult(success=False, error="Workflow response did not include an executionId")

        logger.info(f"Workflow triggered at {webhook_url}: execution {execution_id}")
        return WorkflowResult(success=True, execution_id=str(execution_id))
