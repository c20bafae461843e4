"""
Asynchronous batch embedding jobs (OpenAI Batch API, Gemini asyncBatchEmbedContent).

A job uploads one JSONL request per missing chunk, optionally polls until the
provider finishes, downloads the output file and maps every vector back through
its custom id. Any missing or errored line fails the whole job.
"""

import asyncio
import hashlib
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import httpx
import structlog

from agentmem.services.memory.errors import BatchEmbeddingError

logger = structlog.get_logger(__name__)

MAX_BATCH_REQUESTS = 50000
OPENAI_COMPLETION_WINDOW = "24h"
OPENAI_EMBEDDINGS_ENDPOINT = "/v1/embeddings"
BATCH_HTTP_TIMEOUT = 120.0

_OPENAI_FAILED = {"failed", "expired", "cancelled", "canceled"}
_GEMINI_COMPLETE = {"SUCCEEDED", "COMPLETED", "DONE", "JOB_STATE_SUCCEEDED", "BATCH_STATE_SUCCEEDED"}
_GEMINI_FAILED = {
    "FAILED",
    "CANCELLED",
    "CANCELED",
    "EXPIRED",
    "JOB_STATE_FAILED",
    "BATCH_STATE_FAILED",
    "BATCH_STATE_CANCELLED",
    "BATCH_STATE_EXPIRED",
}


def build_custom_id(
    source: str, path: str, start_line: int, end_line: int, content_hash: str, index: int
) -> str:
    payload = f"{source}:{path}:{start_line}:{end_line}:{content_hash}:{index}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class BatchRequest:
    custom_id: str
    text: str


@dataclass
class BatchOptions:
    wait: bool = True
    poll_interval_ms: int = 2000
    timeout_minutes: int = 60
    concurrency: int = 2
    agent_id: str = ""


def _parse_jsonl(content: str) -> List[Dict[str, Any]]:
    lines = []
    for raw in content.split("\n"):
        raw = raw.strip()
        if not raw:
            continue
        try:
            entry = json.loads(raw)
        except ValueError:
            continue
        if isinstance(entry, dict):
            lines.append(entry)
    return lines


class EmbeddingBatchClient(ABC):
    provider_name = ""

    def __init__(self, provider):
        self.provider = provider

    async def run(
        self, requests: List[BatchRequest], options: BatchOptions
    ) -> Dict[str, List[float]]:
        """Run every request, split into provider-sized groups with bounded concurrency."""
        if not requests:
            return {}
        groups = [
            requests[start:start + MAX_BATCH_REQUESTS]
            for start in range(0, len(requests), MAX_BATCH_REQUESTS)
        ]
        semaphore = asyncio.Semaphore(max(1, options.concurrency))
        results: Dict[str, List[float]] = {}

        async def _run(group: List[BatchRequest]) -> None:
            async with semaphore:
                async with self.provider.client(BATCH_HTTP_TIMEOUT) as client:
                    results.update(await self.run_group(client, group, options))

        await asyncio.gather(*(_run(group) for group in groups))
        return results

    @abstractmethod
    async def run_group(
        self, client: httpx.AsyncClient, group: List[BatchRequest], options: BatchOptions
    ) -> Dict[str, List[float]]:
        """Submit one group and return vectors by custom id."""

    async def _send(
        self, client: httpx.AsyncClient, method: str, url: str, action: str, **kwargs
    ) -> httpx.Response:
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise BatchEmbeddingError(f"{self.provider_name} {action} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise BatchEmbeddingError(f"{self.provider_name} {action} failed: {e}") from e
        if response.status_code < 200 or response.status_code >= 300:
            raise BatchEmbeddingError(
                f"{self.provider_name} {action} failed: {response.status_code} {response.text[:500]}",
                status_code=response.status_code,
            )
        return response

    async def _poll(self, fetch_status, batch_id: str, options: BatchOptions):
        """Poll ``fetch_status`` until it returns a result, failing once the timeout elapses."""
        deadline = time.monotonic() + options.timeout_minutes * 60
        while True:
            done, value = await fetch_status()
            if done:
                return value
            if time.monotonic() >= deadline:
                raise BatchEmbeddingError(f"{self.provider_name} batch {batch_id} timed out")
            await asyncio.sleep(max(0, options.poll_interval_ms) / 1000)

    def _collect(
        self,
        batch_id: str,
        group: List[BatchRequest],
        parsed: List[Tuple[str, Optional[List[float]], str]],
    ) -> Dict[str, List[float]]:
        remaining = {request.custom_id for request in group}
        vectors: Dict[str, List[float]] = {}
        errors: List[str] = []
        for custom_id, vector, error in parsed:
            if not custom_id:
                continue
            remaining.discard(custom_id)
            if error:
                errors.append(f"{custom_id}: {error}")
            elif not vector:
                errors.append(f"{custom_id}: empty embedding")
            else:
                vectors[custom_id] = vector
        if errors:
            raise BatchEmbeddingError(
                f"{self.provider_name} batch {batch_id} failed: {'; '.join(errors[:5])}"
            )
        if remaining:
            raise BatchEmbeddingError(
                f"{self.provider_name} batch {batch_id} missing {len(remaining)} embedding responses"
            )
        return vectors


class OpenAIBatchClient(EmbeddingBatchClient):
    provider_name = "openai"

    def _auth_headers(self) -> Dict[str, str]:
        headers = self.provider.request_headers()
        headers.pop("Content-Type", None)
        return headers

    async def run_group(self, client, group, options):
        base_url = self.provider.base_url
        jsonl = "\n".join(
            json.dumps(
                {
                    "custom_id": request.custom_id,
                    "method": "POST",
                    "url": OPENAI_EMBEDDINGS_ENDPOINT,
                    "body": {"model": self.provider.model, "input": request.text},
                }
            )
            for request in group
        )
        upload = await self._send(
            client,
            "POST",
            f"{base_url}/files",
            "batch file upload",
            headers=self._auth_headers(),
            data={"purpose": "batch"},
            files={"file": ("memory-embeddings.jsonl", jsonl.encode("utf-8"), "application/jsonl")},
        )
        file_id = upload.json().get("id")
        if not file_id:
            raise BatchEmbeddingError("openai batch file upload failed: missing file id")

        created = await self._send(
            client,
            "POST",
            f"{base_url}/batches",
            "batch create",
            headers=self.provider.request_headers(),
            json={
                "input_file_id": file_id,
                "endpoint": OPENAI_EMBEDDINGS_ENDPOINT,
                "completion_window": OPENAI_COMPLETION_WINDOW,
                "metadata": {"source": "agentmem", "agent": options.agent_id},
            },
        )
        status = created.json()
        batch_id = status.get("id")
        if not batch_id:
            raise BatchEmbeddingError("openai batch create failed: missing batch id")

        if status.get("status") == "completed":
            output_file_id = status.get("output_file_id")
        elif not options.wait:
            raise BatchEmbeddingError(
                f"openai batch {batch_id} still {status.get('status')}; wait disabled"
            )
        else:
            output_file_id = await self._poll(
                lambda: self._fetch_status(client, batch_id), batch_id, options
            )
        if not output_file_id:
            raise BatchEmbeddingError(f"openai batch {batch_id} completed without output file")

        content = await self._send(
            client,
            "GET",
            f"{base_url}/files/{output_file_id}/content",
            "batch file content",
            headers=self._auth_headers(),
        )
        logger.info("OpenAI embedding batch completed", batch_id=batch_id, requests=len(group))
        return self._collect(batch_id, group, self._parse_output(content.text))

    async def _fetch_status(self, client, batch_id: str):
        response = await self._send(
            client,
            "GET",
            f"{self.provider.base_url}/batches/{batch_id}",
            "batch status",
            headers=self._auth_headers(),
        )
        status = response.json()
        state = status.get("status") or ""
        if state == "completed":
            return True, status.get("output_file_id")
        if state in _OPENAI_FAILED:
            raise BatchEmbeddingError(f"openai batch {batch_id} {state}")
        return False, None

    @staticmethod
    def _parse_output(content: str):
        parsed = []
        for line in _parse_jsonl(content):
            custom_id = line.get("custom_id") or ""
            error = (line.get("error") or {}).get("message") or ""
            response = line.get("response") or {}
            body = response.get("body") or {}
            status_code = response.get("status_code") or 0
            vector = None
            if not error and status_code >= 400:
                error = (body.get("error") or {}).get("message") or f"status {status_code}"
            if not error:
                data = body.get("data") or []
                if data:
                    vector = data[0].get("embedding")
            parsed.append((custom_id, vector, error))
        return parsed


class GeminiBatchClient(EmbeddingBatchClient):
    provider_name = "gemini"

    def _upload_url(self) -> str:
        base_url = self.provider.base_url
        if "/v1beta" in base_url:
            return base_url.replace("/v1beta", "/upload/v1beta", 1).rstrip("/")
        return base_url + "/upload"

    @staticmethod
    def _upload_body(display_name: str, jsonl: str) -> Tuple[bytes, str]:
        boundary = "agentmem-" + hashlib.sha256(display_name.encode("utf-8")).hexdigest()
        meta = json.dumps({"file": {"displayName": display_name, "mimeType": "application/jsonl"}})
        body = (
            f"--{boundary}\r\n"
            "Content-Type: application/json; charset=UTF-8\r\n\r\n"
            f"{meta}\r\n"
            f"--{boundary}\r\n"
            "Content-Type: application/jsonl; charset=UTF-8\r\n\r\n"
            f"{jsonl}\r\n"
            f"--{boundary}--\r\n"
        )
        return body.encode("utf-8"), f"multipart/related; boundary={boundary}"

    async def run_group(self, client, group, options):
        provider = self.provider
        jsonl = "\n".join(
            json.dumps(
                {
                    "key": request.custom_id,
                    "request": {
                        "content": {"parts": [{"text": request.text}]},
                        "task_type": "RETRIEVAL_DOCUMENT",
                    },
                }
            )
            for request in group
        )
        display_name = f"memory-embeddings-{time.time_ns()}"
        body, content_type = self._upload_body(display_name, jsonl)
        headers = provider.request_headers()
        headers["Content-Type"] = content_type
        upload = await self._send(
            client,
            "POST",
            f"{self._upload_url()}/files?uploadType=multipart",
            "batch file upload",
            headers=headers,
            content=body,
        )
        payload = upload.json()
        file_id = payload.get("name") or (payload.get("file") or {}).get("name")
        if not file_id:
            raise BatchEmbeddingError("gemini batch file upload failed: missing file id")

        try:
            created = await self._send(
                client,
                "POST",
                f"{provider.base_url}/{provider.model_path}:asyncBatchEmbedContent",
                "batch create",
                headers=provider.request_headers(),
                json={
                    "batch": {
                        "displayName": f"memory-embeddings-{options.agent_id}",
                        "inputConfig": {"file_name": file_id},
                    }
                },
            )
        except BatchEmbeddingError as e:
            if e.status_code == 404:
                raise BatchEmbeddingError(
                    "gemini batch create failed: 404 (asyncBatchEmbedContent not available)",
                    unsupported=True,
                ) from e
            raise
        status = created.json()
        batch_name = status.get("name")
        if not batch_name:
            raise BatchEmbeddingError("gemini batch create failed: missing batch name")

        if (status.get("state") or "").upper() in _GEMINI_COMPLETE:
            output_file = self._resolve_output(status)
        elif not options.wait:
            raise BatchEmbeddingError(
                f"gemini batch {batch_name} still {status.get('state')}; wait disabled"
            )
        else:
            output_file = await self._poll(
                lambda: self._fetch_status(client, batch_name), batch_name, options
            )
        if not output_file:
            raise BatchEmbeddingError(f"gemini batch {batch_name} completed without output file")

        if not output_file.startswith("files/"):
            output_file = f"files/{output_file}"
        content = await self._send(
            client,
            "GET",
            f"{provider.base_url}/{output_file}:download",
            "batch file content",
            headers=provider.request_headers(),
        )
        logger.info("Gemini embedding batch completed", batch=batch_name, requests=len(group))
        return self._collect(batch_name, group, self._parse_output(content.text))

    async def _fetch_status(self, client, batch_name: str):
        name = batch_name if batch_name.startswith("batches/") else f"batches/{batch_name}"
        response = await self._send(
            client,
            "GET",
            f"{self.provider.base_url}/{name}",
            "batch status",
            headers=self.provider.request_headers(),
        )
        status = response.json()
        state = (status.get("state") or "").upper()
        if state in _GEMINI_COMPLETE:
            output_file = self._resolve_output(status)
            if not output_file:
                raise BatchEmbeddingError(
                    f"gemini batch {batch_name} completed without output file"
                )
            return True, output_file
        if state in _GEMINI_FAILED:
            message = (status.get("error") or {}).get("message") or "unknown error"
            raise BatchEmbeddingError(f"gemini batch {batch_name} {state}: {message}")
        return False, None

    @staticmethod
    def _resolve_output(status: Dict[str, Any]) -> str:
        output_config = status.get("outputConfig") or {}
        metadata_output = (status.get("metadata") or {}).get("output") or {}
        return (
            output_config.get("file")
            or output_config.get("fileId")
            or metadata_output.get("responsesFile")
            or ""
        )

    @staticmethod
    def _parse_output(content: str):
        parsed = []
        for line in _parse_jsonl(content):
            custom_id = line.get("key") or line.get("custom_id") or line.get("request_id") or ""
            response = line.get("response") or {}
            error = (
                (line.get("error") or {}).get("message")
                or (response.get("error") or {}).get("message")
                or ""
            )
            vector = (line.get("embedding") or {}).get("values") or (
                response.get("embedding") or {}
            ).get("values")
            parsed.append((custom_id, vector, error))
        return parsed
