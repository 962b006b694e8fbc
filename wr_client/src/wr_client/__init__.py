"""
Workspace Reconciler Python Client (minimal SDK)

A thin, synchronous client for the workspace reconciler API (wr_server).

Features implemented:
- health()
- list_templates(), get_template(name), list_template_errors()
- create_workspace(template, name, parameters=..., start=True)
- list_workspaces(owner=None), get_workspace(wsid)
- update_parameters(wsid, parameters)
- start(wsid), stop(wsid), reconcile(wsid)
- delete_workspace(wsid, purge=None)
- list_apps(wsid, refresh=False)

Error responses raise ReconcilerAPIError carrying the HTTP status and the
server's {error, stage, detail} body.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from .config import check_transport, get_settings as get_client_settings
from .constants import DEFAULT_API_KEY_HEADER

logger = logging.getLogger(__name__)


class ReconcilerAPIError(Exception):
    """
    Non-2xx response from the reconciler service.
    """

    def __init__(
        self,
        status_code: int,
        detail: str,
        *,
        error: Optional[str] = None,
        stage: Optional[str] = None,
    ) -> None:
        self.status_code = status_code
        self.error = error
        self.stage = stage
        self.detail = detail
        where = f" at stage {stage}" if stage else ""
        super().__init__(f"HTTP {status_code} {error or 'error'}{where}: {detail}")

    @classmethod
    def from_response(cls, response: requests.Response) -> "ReconcilerAPIError":
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and "error" in body:
            return cls(
                response.status_code,
                str(body.get("detail", "")),
                error=body.get("error"),
                stage=body.get("stage"),
            )
        if isinstance(body, dict) and "detail" in body:
            # FastAPI HTTPException / validation error bodies
            return cls(response.status_code, str(body["detail"]))
        return cls(response.status_code, response.text or response.reason or "")


class WorkspaceReconcilerClient:
    """
    Minimal synchronous client for the workspace reconciler API.

    Example:
        client = WorkspaceReconcilerClient(base_url="https://wr.example.test", api_key="my-secret")
        out = client.create_workspace("java-node", "demo", parameters={"cpu": 2, "memory": 4})
        wsid = out["workspace"]["workspace_id"]
        client.stop(wsid)
        client.delete_workspace(wsid, purge=True)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        api_key_header_name: Optional[str] = None,
        session: Optional[requests.Session] = None,
        *,
        verify_tls: Optional[bool] = None,
        allow_insecure_http: Optional[bool] = None,
        allow_insecure_tls: Optional[bool] = None,
        request_timeout: Optional[int] = None,
        reconcile_timeout: Optional[int] = None,
    ) -> None:
        cfg = get_client_settings()
        self.verify_tls = bool(cfg.verify_tls if verify_tls is None else verify_tls)
        self.allow_insecure_http = bool(cfg.allow_insecure_http if allow_insecure_http is None else allow_insecure_http)
        self.allow_insecure_tls = bool(cfg.allow_insecure_tls if allow_insecure_tls is None else allow_insecure_tls)
        self.base_url = check_transport(
            base_url or cfg.base_url_normalized,
            verify_tls=self.verify_tls,
            allow_insecure_http=self.allow_insecure_http,
            allow_insecure_tls=self.allow_insecure_tls,
            http_opt_in="allow_insecure_http=True (or WR_ALLOW_INSECURE_HTTP=true)",
            tls_opt_in="allow_insecure_tls=True (or WR_ALLOW_INSECURE_TLS=true)",
        )
        self.api_key = api_key if api_key is not None else cfg.api_key
        self.api_key_header_name = api_key_header_name or cfg.api_key_header_name or DEFAULT_API_KEY_HEADER
        self.request_timeout = int(request_timeout or cfg.request_timeout)
        self.reconcile_timeout = int(reconcile_timeout or cfg.reconcile_timeout)
        self._session = session or requests.Session()
        if session is None or verify_tls is not None:
            self._session.verify = self.verify_tls

    # -----------------------
    # Internal helpers
    # -----------------------

    def _headers(self) -> Dict[str, str]:
        h: Dict[str, str] = {}
        if self.api_key:
            h[self.api_key_header_name] = self.api_key
        return h

    @staticmethod
    def _ws_path(workspace_id: str) -> str:
        if not workspace_id:
            raise ValueError("workspace_id is required")
        return f"/workspaces/{quote(workspace_id, safe='')}"

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        timeout: Optional[int] = None,
    ) -> Dict[str, Any]:
        r = self._session.request(
            method,
            f"{self.base_url}{path}",
            params=params,
            json=json,
            headers=self._headers(),
            timeout=timeout or self.request_timeout,
        )
        if r.status_code >= 400:
            err = ReconcilerAPIError.from_response(r)
            logger.debug("%s %s failed: %s", method, path, err)
            raise err
        if not r.content:
            return {}
        return r.json() or {}

    @staticmethod
    def _bool_param(value: bool) -> str:
        return "true" if value else "false"

    # -----------------------
    # Public API
    # -----------------------

    def health(self, timeout: int = 5) -> Dict[str, Any]:
        return self._request("GET", "/health", timeout=timeout)

    def list_templates(self) -> List[Dict[str, Any]]:
        return list(self._request("GET", "/templates").get("templates", []))

    def get_template(self, name: str) -> Dict[str, Any]:
        return self._request("GET", f"/templates/{quote(name, safe='')}")

    def list_template_errors(self) -> List[Dict[str, Any]]:
        return list(self._request("GET", "/templates/errors").get("errors", []))

    def create_workspace(
        self,
        template: str,
        name: str,
        *,
        parameters: Optional[Dict[str, Any]] = None,
        owner: Optional[str] = None,
        start: bool = True,
        wait_for_agent: bool = False,
        timeout: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Instantiate a template. Returns {workspace, reconcile}; a failed start
        is reported in reconcile.error while the workspace stays recorded.
        """
        payload: Dict[str, Any] = {
            "template": template,
            "name": name,
            "parameters": dict(parameters or {}),
            "start": start,
            "wait_for_agent": wait_for_agent,
        }
        if owner:
            payload["owner"] = owner
        return self._request("POST", "/workspaces", json=payload, timeout=timeout or self.reconcile_timeout)

    def list_workspaces(self, owner: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"owner": owner} if owner else None
        return list(self._request("GET", "/workspaces", params=params).get("workspaces", []))

    def get_workspace(self, workspace_id: str) -> Dict[str, Any]:
        return self._request("GET", self._ws_path(workspace_id))

    def update_parameters(self, workspace_id: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
        return self._request(
            "PATCH", f"{self._ws_path(workspace_id)}/parameters", json={"parameters": dict(parameters)}
        )

    def start(self, workspace_id: str, *, wait_for_agent: bool = False, timeout: Optional[int] = None) -> Dict[str, Any]:
        return self._request(
            "POST",
            f"{self._ws_path(workspace_id)}/start",
            params={"wait_for_agent": self._bool_param(wait_for_agent)},
            timeout=timeout or self.reconcile_timeout,
        )

    def stop(self, workspace_id: str, timeout: Optional[int] = None) -> Dict[str, Any]:
        return self._request("POST", f"{self._ws_path(workspace_id)}/stop", timeout=timeout or self.reconcile_timeout)

    def reconcile(
        self, workspace_id: str, *, wait_for_agent: bool = False, timeout: Optional[int] = None
    ) -> Dict[str, Any]:
        return self._request(
            "POST",
            f"{self._ws_path(workspace_id)}/reconcile",
            params={"wait_for_agent": self._bool_param(wait_for_agent)},
            timeout=timeout or self.reconcile_timeout,
        )

    def delete_workspace(self, workspace_id: str, purge: Optional[bool] = None) -> Dict[str, Any]:
        params = {"purge": self._bool_param(purge)} if purge is not None else None
        return self._request("DELETE", self._ws_path(workspace_id), params=params)

    def list_apps(self, workspace_id: str, refresh: bool = False) -> List[Dict[str, Any]]:
        params = {"refresh": self._bool_param(refresh)}
        return list(self._request("GET", f"{self._ws_path(workspace_id)}/apps", params=params).get("apps", []))


__all__ = ["WorkspaceReconcilerClient", "ReconcilerAPIError"]
