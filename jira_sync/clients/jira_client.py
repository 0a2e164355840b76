"""Jira development information API client"""
import logging
from typing import Any, Dict, Optional

import requests

from jira_sync.clients.errors import JiraClientError

logger = logging.getLogger(__name__)


class JiraClient:
    """Wrapper for the Jira dev-info, builds and deployments bulk APIs"""

    def __init__(self, jira_host: str, token: Optional[str], timeout_sec: int = 30, session: Optional[requests.Session] = None):
        self.jira_host = jira_host.rstrip("/")
        self.token = token
        self.timeout_sec = timeout_sec
        self.session = session or requests.Session()

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            response = self.session.post(
                f"{self.jira_host}{path}", json=body, headers=headers, timeout=self.timeout_sec
            )
        except requests.RequestException as e:
            raise JiraClientError(f"Jira request {path} failed: {e}") from e

        if response.status_code >= 400:
            logger.warning(f"Jira request {path} on {self.jira_host} failed with status {response.status_code}")
            raise JiraClientError(
                f"Jira request {path} failed with status {response.status_code}", status=response.status_code
            )
        return response.json() if response.content else {}

    def submit_dev_info(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Submit repositories with their commits, branches and pull requests"""
        return self._post("/rest/devinfo/0.10/bulk", payload)

    def submit_builds(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._post("/rest/builds/0.1/bulk", payload)

    def submit_deployments(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._post("/rest/deployments/0.1/bulk", payload)


def get_jira_client(jira_host: str) -> JiraClient:
    from jira_sync.config import settings

    return JiraClient(jira_host, settings.jira_token, timeout_sec=settings.jira_request_timeout_sec)
