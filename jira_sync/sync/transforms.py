"""GitHub entities to Jira development information documents"""

import re
import time
from typing import Any, Dict, Iterable, List, Optional

# Jira issue keys: project key (letter then letters/digits/underscores) dash number
_ISSUE_KEY_RE = re.compile(r"(?<![A-Za-z0-9])([A-Za-z][A-Za-z0-9_]+-\d+)")

MAX_ISSUE_KEYS = 100


def jira_issue_key_parser(*texts: Optional[str]) -> List[str]:
    """Unique, upper-cased issue keys found in the given texts, in order of appearance."""
    keys: List[str] = []
    for text in texts:
        if not text:
            continue
        for match in _ISSUE_KEY_RE.findall(text):
            key = match.upper()
            if key not in keys:
                keys.append(key)
    return keys[:MAX_ISSUE_KEYS]


def _update_sequence_id() -> int:
    return int(time.time() * 1000)


def repository_info(repository) -> Dict[str, Any]:
    """Repository fields shared by every dev-info document (``repository`` is a RepoSyncState)."""
    return {
        "id": str(repository.repo_id),
        "name": repository.repo_full_name,
        "url": repository.repo_url,
        "updateSequenceId": _update_sequence_id(),
    }


def dev_info_payload(repository, installation_id: Optional[int], **entities: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Wrap entities (commits=, branches=, pullRequests=) for the dev-info bulk API.

    Returns None when there is nothing carrying an issue key.
    """
    entities = {name: items for name, items in entities.items() if items}
    if not entities:
        return None
    return {
        "preventTransitions": True,
        "operationType": "BACKFILL",
        "repositories": [{**repository_info(repository), **entities}],
        "properties": {"installationId": installation_id},
    }


def _commit_author(commit: Dict[str, Any]) -> Dict[str, Any]:
    author = (commit.get("commit") or {}).get("author") or {}
    return {"name": author.get("name") or "unknown", "email": author.get("email")}


def transform_commit(commit: Dict[str, Any], branch_issue_keys: Optional[List[str]] = None) -> Optional[Dict[str, Any]]:
    """Jira commit for a GitHub commit, or None when it references no issue.

    Commits listed from a branch history also carry the branch name's keys.
    """
    message = (commit.get("commit") or {}).get("message") or ""
    issue_keys = jira_issue_key_parser(message)
    issue_keys += [key for key in branch_issue_keys or [] if key not in issue_keys]
    if not issue_keys:
        return None
    sha = commit["sha"]
    return {
        "id": sha,
        "hash": sha,
        "displayId": sha[:6],
        "issueKeys": issue_keys,
        "message": message[:1024],
        "author": _commit_author(commit),
        "authorTimestamp": ((commit.get("commit") or {}).get("author") or {}).get("date"),
        "url": commit.get("html_url"),
        "fileCount": len(commit.get("files") or []),
        "updateSequenceId": _update_sequence_id(),
    }


def transform_commits(
    commits: Iterable[Dict[str, Any]], branch_issue_keys: Optional[List[str]] = None
) -> List[Dict[str, Any]]:
    return [c for c in (transform_commit(commit, branch_issue_keys) for commit in commits) if c]


def _pull_request_status(pull: Dict[str, Any]) -> str:
    if pull.get("merged_at"):
        return "MERGED"
    if pull.get("state") == "closed":
        return "DECLINED"
    return "OPEN"


def transform_pull_requests(pulls: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    out = []
    for pull in pulls:
        head = pull.get("head") or {}
        issue_keys = jira_issue_key_parser(pull.get("title"), head.get("ref"), pull.get("body"))
        if not issue_keys:
            continue
        out.append(
            {
                "id": str(pull["number"]),
                "displayId": f"#{pull['number']}",
                "issueKeys": issue_keys,
                "title": pull.get("title"),
                "status": _pull_request_status(pull),
                "url": pull.get("html_url"),
                "author": {"name": ((pull.get("user") or {}).get("login")) or "unknown"},
                "sourceBranch": head.get("ref"),
                "destinationBranch": (pull.get("base") or {}).get("ref"),
                "lastUpdate": pull.get("updated_at"),
                "commentCount": pull.get("comments") or 0,
                "updateSequenceId": _update_sequence_id(),
            }
        )
    return out


def transform_branches(branches: Iterable[Dict[str, Any]], repository) -> List[Dict[str, Any]]:
    out = []
    for branch in branches:
        name = branch.get("name") or ""
        issue_keys = jira_issue_key_parser(name)
        if not issue_keys:
            continue
        sha = (branch.get("commit") or {}).get("sha") or ""
        out.append(
            {
                "id": name,
                "name": name,
                "issueKeys": issue_keys,
                "url": f"{repository.repo_url}/tree/{name}",
                "createPullRequestUrl": f"{repository.repo_url}/compare/{name}?expand=1",
                "lastCommit": {
                    "id": sha,
                    "hash": sha,
                    "displayId": sha[:6],
                    "issueKeys": issue_keys,
                    "url": f"{repository.repo_url}/commit/{sha}",
                    "updateSequenceId": _update_sequence_id(),
                },
                "updateSequenceId": _update_sequence_id(),
            }
        )
    return out


_BUILD_STATES = {
    "success": "successful",
    "failure": "failed",
    "cancelled": "cancelled",
    "timed_out": "failed",
    "skipped": "cancelled",
}


def transform_workflow_runs(runs: Iterable[Dict[str, Any]], repository) -> Optional[Dict[str, Any]]:
    builds = []
    for run in runs:
        head_commit = run.get("head_commit") or {}
        issue_keys = jira_issue_key_parser(run.get("head_branch"), head_commit.get("message"))
        if not issue_keys:
            continue
        state = _BUILD_STATES.get(run.get("conclusion") or "", "in_progress" if run.get("status") != "completed" else "unknown")
        builds.append(
            {
                "schemaVersion": "1.0",
                "pipelineId": str(run.get("workflow_id")),
                "buildNumber": run.get("run_number"),
                "updateSequenceNumber": _update_sequence_id(),
                "displayName": run.get("name") or str(run.get("workflow_id")),
                "url": run.get("html_url"),
                "state": state,
                "lastUpdated": run.get("updated_at"),
                "issueKeys": issue_keys,
                "references": [
                    {
                        "commit": {"id": run.get("head_sha"), "repositoryUri": repository.repo_url},
                        "ref": {"name": run.get("head_branch"), "uri": f"{repository.repo_url}/tree/{run.get('head_branch')}"},
                    }
                ],
            }
        )
    if not builds:
        return None
    return {"builds": builds, "properties": {"repositoryId": repository.repo_id}}


def transform_deployments(deployments: Iterable[Dict[str, Any]], repository) -> Optional[Dict[str, Any]]:
    out = []
    for deployment in deployments:
        issue_keys = jira_issue_key_parser(deployment.get("ref"), deployment.get("description"))
        if not issue_keys:
            continue
        environment = deployment.get("environment") or "unmapped"
        out.append(
            {
                "schemaVersion": "1.0",
                "deploymentSequenceNumber": deployment["id"],
                "updateSequenceNumber": _update_sequence_id(),
                "issueKeys": issue_keys,
                "displayName": deployment.get("description") or deployment.get("ref") or str(deployment["id"]),
                "url": deployment.get("url"),
                "description": deployment.get("description") or "",
                "lastUpdated": deployment.get("updated_at"),
                "state": "unknown",
                "pipeline": {
                    "id": deployment.get("task") or "deploy",
                    "displayName": deployment.get("task") or "deploy",
                    "url": f"{repository.repo_url}/deployments",
                },
                "environment": {"id": environment, "displayName": environment, "type": "unmapped"},
            }
        )
    if not out:
        return None
    return {"deployments": out, "properties": {"repositoryId": repository.repo_id}}
