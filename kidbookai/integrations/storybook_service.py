"""
HTTP client for the storybook assembly service that renders personalised books.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Mapping

import requests

from .contracts import AssemblyRequest, AssemblyUpdated

logger = logging.getLogger(__name__)


def _optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _optional_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def assembly_update_from_payload(payload: Mapping[str, Any], *, job_id: str | None = None) -> AssemblyUpdated:
    """
    Translate a storybook job document (polled or pushed) into a notification.
    """
    resolved_id = payload.get("id") or payload.get("jobId") or job_id
    if not resolved_id:
        raise ValueError("Storybook job payload must include an 'id'.")

    status = str(payload.get("status") or "queued")
    error = payload.get("error")
    if status == "failed" and not error:
        error = "Storybook generation failed"
    pdf_asset = payload.get("pdfAsset", payload.get("pdf_asset"))

    return AssemblyUpdated(
        job_id=str(resolved_id),
        status=status,
        progress=_optional_float(payload.get("progress")),
        error=str(error) if error else None,
        pdf_asset=dict(pdf_asset) if isinstance(pdf_asset, Mapping) else None,
        estimated_seconds_remaining=_optional_int(
            payload.get("estimatedSecondsRemaining", payload.get("estimated_seconds_remaining"))
        ),
    )


class HttpAssemblyProvider:
    """
    Start and poll storybook assembly jobs over HTTP.

    Parameters
    ----------
    base_url:
        Root of the storybook service. Falls back to ``KIDBOOKAI_STORYBOOK_API_URL``.
    api_key:
        Optional bearer token. Falls back to ``KIDBOOKAI_STORYBOOK_API_KEY``.
    timeout:
        Per-request timeout in seconds.
    session:
        Optional :class:`requests.Session`. Mainly useful for testing.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        resolved_url = base_url or os.getenv("KIDBOOKAI_STORYBOOK_API_URL")
        if not resolved_url:
            raise ValueError(
                "Storybook service URL is required. Set KIDBOOKAI_STORYBOOK_API_URL or pass base_url."
            )
        self._base_url = resolved_url.rstrip("/")
        self._api_key = api_key or os.getenv("KIDBOOKAI_STORYBOOK_API_KEY")
        self._timeout = timeout
        self._session = session or requests.Session()

    @property
    def base_url(self) -> str:
        return self._base_url

    async def dispatch(self, request: AssemblyRequest) -> str:
        payload = await asyncio.to_thread(self._request, "POST", "/storybook-jobs", request.to_dict())
        job_id = payload.get("jobId") or payload.get("id")
        if not job_id:
            raise RuntimeError("Storybook service response did not include a job id.")
        logger.info("Started storybook job %s for training %s.", job_id, request.training_id)
        return str(job_id)

    async def fetch_update(self, job_id: str) -> AssemblyUpdated:
        payload = await asyncio.to_thread(self._request, "GET", f"/storybook-jobs/{job_id}", None)
        return assembly_update_from_payload(payload, job_id=job_id)

    def _request(self, method: str, path: str, body: Mapping[str, Any] | None) -> dict[str, Any]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        try:
            response = self._session.request(
                method,
                f"{self._base_url}{path}",
                json=body,
                headers=headers,
                timeout=self._timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise RuntimeError(f"Storybook service request {method} {path} failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise RuntimeError(f"Storybook service returned non-JSON for {method} {path}.") from exc
        if not isinstance(payload, dict):
            raise RuntimeError(f"Storybook service returned an unexpected payload for {method} {path}.")
        return payload
