"""
Vendor automation API client.

Every account mutation on the vendor side is asynchronous: a submit
call returns a ``task_id`` which is then polled until it reaches a
terminal state. Profile edits (bio, prompt) go through the edit-cards
task; engagement campaigns are Celery-backed vendor tasks reporting
``PENDING/STARTED/PROGRESS/RETRY`` until ``SUCCESS``, ``FAILURE`` or
``REVOKED``.

Text for bios and prompts is produced by an injected generator (the AI
collaborator) when the caller does not supply it.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import httpx
import structlog

from app.config import get_settings
from core.exceptions import ValidationError, VendorCallError
from integrations.base import VendorClient

logger = structlog.get_logger(__name__)

BioGenerator = Callable[[str], Awaitable[str]]
PromptGenerator = Callable[[str, str, str], Awaitable[Tuple[str, str]]]

PROMPT_QUESTION_ID = "pro_1"
PROMPT_QUESTION = "My weird but true story is…"

_EDIT_DONE = {"COMPLETED"}
_EDIT_FAILED = {"FAILED", "ERROR"}
_TASK_RUNNING = {"PENDING", "STARTED", "PROGRESS", "RETRY"}


class HttpVendorClient(VendorClient):
    """httpx-backed implementation of the vendor contract."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        poll_attempts: Optional[int] = None,
        bio_generator: Optional[BioGenerator] = None,
        prompt_generator: Optional[PromptGenerator] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.poll_interval = settings.VENDOR_POLL_INTERVAL if poll_interval is None else poll_interval
        self.poll_attempts = poll_attempts or settings.VENDOR_POLL_ATTEMPTS
        self.bio_generator = bio_generator
        self.prompt_generator = prompt_generator
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.VENDOR_API_URL,
            headers={
                "Authorization": f"Bearer {api_key or settings.VENDOR_API_KEY}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(timeout or settings.VENDOR_TIMEOUT, connect=10.0),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "HttpVendorClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ─── Transport ─────────────────────────────────────────

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException:
            logger.warning("Vendor request timeout", method=method, path=path)
            raise VendorCallError(f"Vendor request timed out: {method} {path}")
        except httpx.HTTPError as e:
            logger.warning("Vendor request failed", method=method, path=path, error=str(e))
            raise VendorCallError(f"Vendor request failed: {e}")

        if response.status_code >= 400:
            logger.error(
                "Vendor API error",
                method=method,
                path=path,
                status=response.status_code,
                body=response.text[:500],
            )
            raise VendorCallError(
                f"Vendor API error {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError:
            raise VendorCallError(f"Vendor returned non-JSON response for {path}")

    @staticmethod
    def _task_id(data: Dict[str, Any], what: str) -> str:
        task_id = data.get("task_id")
        if not task_id:
            raise VendorCallError(f"No task id received for {what}")
        return task_id

    # ─── Liveness ──────────────────────────────────────────

    async def get_accounts(self, account_ids) -> Dict[str, Any]:
        data = await self._request("POST", "/api/get-accounts-by-ids", json=list(account_ids))
        if not data.get("success", True):
            raise VendorCallError("Vendor rejected account lookup")
        return data

    async def is_alive(self, account_id: str) -> bool:
        data = await self.get_accounts([account_id])
        accounts = data.get("accounts") or []
        if not accounts:
            logger.warning("Vendor has no record of account", account_id=account_id)
            return False
        status = accounts[0].get("status")
        logger.debug("Account status", account_id=account_id, status=status)
        return status == "alive"

    # ─── Profile edits ─────────────────────────────────────

    async def _submit_edit(self, account_id: str, update_data: Dict[str, Any], what: str) -> Tuple[str, Dict]:
        payload = {"edits": [{"card_id": account_id, "update_data": update_data}]}
        data = await self._request("POST", "/api/edit-cards", json=payload)
        task_id = self._task_id(data, what)
        logger.info("Vendor edit submitted", account_id=account_id, task_id=task_id, edit=what)
        return task_id, await self.poll_edit_task(task_id)

    async def poll_edit_task(self, task_id: str) -> Dict[str, Any]:
        for attempt in range(1, self.poll_attempts + 1):
            data = await self._request("GET", f"/api/get-edit-cards-status/{task_id}")
            status = data.get("status")
            if status in _EDIT_DONE:
                return data
            if status in _EDIT_FAILED:
                raise VendorCallError(f"Edit task {task_id} failed: {data.get('error') or 'unknown error'}")
            logger.debug("Edit task pending", task_id=task_id, status=status, attempt=attempt)
            if attempt < self.poll_attempts:
                await asyncio.sleep(self.poll_interval)
        raise VendorCallError(f"Edit task {task_id} did not finish after {self.poll_attempts} polls")

    async def update_bio(self, account_id: str, text: Optional[str] = None) -> dict:
        if not text:
            if self.bio_generator is None:
                raise ValidationError("No bio text given and no bio generator configured")
            text = await self.bio_generator(account_id)

        task_id, result = await self._submit_edit(
            account_id,
            {"bio_information": {"mode": "manual", "bio": text}},
            "bio",
        )
        return {"task_id": task_id, "generated_bio": text, "result": result}

    async def update_prompt(self, account_id: str, model: str, channel: str) -> dict:
        if self.prompt_generator is None:
            raise ValidationError("No prompt generator configured")
        visible_text, obfuscated_text = await self.prompt_generator(account_id, model, channel)

        task_id, result = await self._submit_edit(
            account_id,
            {
                "questions": [{
                    "id": PROMPT_QUESTION_ID,
                    "question": PROMPT_QUESTION,
                    "answer": obfuscated_text or visible_text,
                }]
            },
            "prompt",
        )
        return {
            "task_id": task_id,
            "visible_text": visible_text,
            "obfuscated_text": obfuscated_text,
            "result": result,
        }

    # ─── Engagement ────────────────────────────────────────

    async def run_engagement_campaign(self, account_id: str, count: int) -> dict:
        data = await self._request(
            "POST",
            "/api/tasks/engagement/start",
            json={"account_ids": [account_id], "count": count},
        )
        task_id = self._task_id(data, "engagement campaign")
        logger.info("Engagement campaign started", account_id=account_id, task_id=task_id, count=count)

        status = await self.poll_engagement_task(task_id)
        result = status.get("result") or {}
        return {
            "task_id": task_id,
            "matches": int(result.get("matches", 0) or 0),
            "swipes": int(result.get("swipes", count) or 0),
            "state": status.get("celery_status"),
        }

    async def poll_engagement_task(self, task_id: str) -> Dict[str, Any]:
        for attempt in range(1, self.poll_attempts + 1):
            data = await self._request("GET", f"/api/tasks/engagement/status/{task_id}")
            state = data.get("celery_status") or data.get("status")
            if state in ("SUCCESS", "REVOKED"):
                return data
            if state == "FAILURE":
                raise VendorCallError(f"Engagement task {task_id} failed: {data.get('error')}")
            if state not in _TASK_RUNNING:
                logger.warning("Unknown engagement task state", task_id=task_id, state=state)
                return data
            if attempt < self.poll_attempts:
                await asyncio.sleep(self.poll_interval)
        await self._abandon_engagement(task_id)
        raise VendorCallError(f"Engagement task {task_id} did not finish after {self.poll_attempts} polls")

    async def stop_engagement_task(self, task_id: str) -> Dict[str, Any]:
        return await self._request("POST", f"/api/tasks/engagement/stop/{task_id}")

    async def _abandon_engagement(self, task_id: str) -> None:
        """Stop a campaign we gave up polling so a retry does not run it twice."""
        try:
            await self.stop_engagement_task(task_id)
        except VendorCallError as e:
            logger.warning("Could not stop abandoned engagement task", task_id=task_id, error=e.message)
        else:
            logger.info("Stopped abandoned engagement task", task_id=task_id)
