"""
Client-side helper for the orchestrator HTTP API.

This module provides a lightweight wrapper that:
  * Discovers the orchestrator host/port from `.env` at the repo root.
  * Reuses a `requests.Session` for efficiency.
  * Sends the caller's identity in the `X-User-Id` header.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union
from urllib.parse import urlparse, urlunparse

import requests

from devicepilot.config import _load_repo_dotenv

JsonDict = Dict[str, Any]

_HOST_ENV_VAR = "DEVICEPILOT_HOST"
_PORT_ENV_VAR = "DEVICEPILOT_PORT"
_BASE_URL_ENV_VAR = "DEVICEPILOT_BASE_URL"
USER_HEADER = "X-User-Id"


class OrchestratorClientError(RuntimeError):
    """Raised when the orchestrator returns an unexpected response."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, payload: Optional[Any] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


def _normalize_base_url(host: Optional[str], port: Optional[Union[str, int]], *, scheme: str = "http") -> str:
    clean_host = host or "127.0.0.1"
    if clean_host == "0.0.0.0":
        clean_host = "127.0.0.1"
    clean_port = str(port or "8080")
    parsed = urlparse(clean_host if "://" in clean_host else f"{scheme}://{clean_host}")
    netloc = parsed.netloc or parsed.path
    if ":" not in netloc and clean_port:
        netloc = f"{netloc}:{clean_port}"
    return urlunparse((parsed.scheme or scheme, netloc, "", "", "", ""))


def _safe_json(response: requests.Response) -> Optional[Any]:
    try:
        return response.json()
    except ValueError:
        return response.text or None


@dataclass
class OrchestratorClient:
    """
    High-level client for the orchestrator service.

    Parameters:
        user_id: Identity forwarded in the `X-User-Id` header.
        base_url: Optional manual override (e.g., "http://10.0.0.5:8080").
        host: Overrides env-derived host when provided.
        port: Overrides env-derived port when provided.
        timeout: Default request timeout (seconds) applied to each call.
        dotenv_path: Optional path to the `.env` file that provides host/port.
        session: Optional existing `requests.Session` to reuse.
    """

    user_id: Optional[str] = None
    base_url: Optional[str] = None
    host: Optional[str] = None
    port: Optional[Union[str, int]] = None
    timeout: float = 30.0
    dotenv_path: Optional[Union[str, Path]] = None
    session: Optional[requests.Session] = None

    def __post_init__(self) -> None:
        _load_repo_dotenv(self.dotenv_path)

        if self.base_url:
            if "://" not in self.base_url:
                self.base_url = f"http://{self.base_url}"
        else:
            env_base = os.getenv(_BASE_URL_ENV_VAR)
            resolved_host = self.host or os.getenv(_HOST_ENV_VAR)
            resolved_port = self.port or os.getenv(_PORT_ENV_VAR)
            if env_base and not (self.host or self.port):
                base_url = env_base.strip()
                if "://" not in base_url:
                    base_url = f"http://{base_url}"
                self.base_url = base_url
            else:
                self.base_url = _normalize_base_url(resolved_host, resolved_port)
        self.base_url = self.base_url.rstrip("/")

        self._session = self.session or requests.Session()

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    def _headers(self, authenticated: bool) -> Dict[str, str]:
        if not authenticated:
            return {}
        if not self.user_id:
            raise OrchestratorClientError("user_id is required for this endpoint")
        return {USER_HEADER: self.user_id}

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[JsonDict] = None,
        authenticated: bool = True,
        expected_status: Iterable[int] = (200,),
        timeout: Optional[float] = None,
    ) -> JsonDict:
        url = f"{self.base_url}{path}"
        response = self._session.request(
            method,
            url,
            json=json,
            headers=self._headers(authenticated),
            timeout=timeout or self.timeout,
        )
        if response.status_code not in expected_status:
            raise OrchestratorClientError(
                f"Orchestrator request to {path} failed with HTTP {response.status_code}",
                status_code=response.status_code,
                payload=_safe_json(response),
            )
        return response.json()

    # ------------------------------------------------------------------ #
    # Public api methods
    # ------------------------------------------------------------------ #

    def submit_goal(
        self,
        device_id: str,
        goal: str,
        *,
        llm_provider: Optional[str] = None,
        llm_api_key: Optional[str] = None,
        llm_model: Optional[str] = None,
        max_steps: Optional[int] = None,
    ) -> JsonDict:
        """
        Start a goal (`POST /goals`). A 409 payload carries the running sessionId.
        """
        payload: JsonDict = {"deviceId": device_id, "goal": goal}
        if llm_provider is not None:
            payload["llmProvider"] = llm_provider
        if llm_api_key is not None:
            payload["llmApiKey"] = llm_api_key
        if llm_model is not None:
            payload["llmModel"] = llm_model
        if max_steps is not None:
            payload["maxSteps"] = max_steps
        return self._request("POST", "/goals", json=payload)

    def stop_goal(self, device_id: str) -> JsonDict:
        return self._request("POST", "/goals/stop", json={"deviceId": device_id})

    def get_session(self, session_id: str) -> JsonDict:
        return self._request("GET", f"/sessions/{session_id}")

    def investigate_session(self, session_id: str) -> JsonDict:
        return self._request("POST", f"/investigate/{session_id}")

    def list_devices(self) -> JsonDict:
        return self._request("GET", "/devices")

    def health(self) -> JsonDict:
        return self._request("GET", "/health", authenticated=False)

    def create_pairing_code(self) -> JsonDict:
        return self._request("POST", "/pairing/create")

    def pairing_status(self) -> JsonDict:
        return self._request("GET", "/pairing/status")

    def claim_pairing_code(self, code: str) -> JsonDict:
        """
        Exchange a pairing code for a device credential (`POST /pairing/claim`).
        """
        return self._request("POST", "/pairing/claim", json={"code": code}, authenticated=False)


__all__ = ["OrchestratorClient", "OrchestratorClientError"]
