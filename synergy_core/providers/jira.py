"""Jira client and the Jira agent built on top of it."""

import re
from typing import Any
from urllib.parse import quote

import httpx

from synergy_core.logging import get_logger
from synergy_core.providers.base import (
    AgentBase,
    Capability,
    CapabilityParameter,
    CapabilityResult,
    ClientBase,
    FieldSpec,
    ProviderMetadata,
)

log = get_logger(__name__)

_ISSUE_KEY_PARAM = CapabilityParameter(
    name="issueKey", type="string", description='Issue key (e.g., "PROJ-123")', required=True
)

_CREATE_ISSUE = Capability(
    name="jira_create_issue",
    description="Create a new Jira issue",
    parameters=[
        CapabilityParameter(name="projectKey", type="string", description='Project key (e.g., "PROJ")', required=True),
        CapabilityParameter(name="summary", type="string", description="Issue summary/title", required=True),
        CapabilityParameter(
            name="issueType", type="string", description='Issue type (e.g., "Bug", "Task", "Story")', required=True
        ),
        CapabilityParameter(name="description", type="string", description="Issue description"),
        CapabilityParameter(name="priority", type="string", description='Priority (e.g., "High", "Medium", "Low")'),
    ],
)

_ADD_COMMENT = Capability(
    name="jira_add_comment",
    description="Add a comment to a Jira issue",
    parameters=[
        _ISSUE_KEY_PARAM,
        CapabilityParameter(name="comment", type="string", description="Comment text", required=True),
    ],
)


class JiraClient(ClientBase):
    """Jira REST API v2 client authenticated with a personal access token."""

    metadata = ProviderMetadata(
        id="jira",
        name="Jira",
        description="Atlassian Jira integration for issue tracking and project management",
        version="1.0.0",
        author="Synergy",
        icon="https://www.atlassian.com/favicon.ico",
        homepage="https://www.atlassian.com/software/jira",
        tags=("jira", "atlassian", "project-management", "issues", "agile"),
    )

    def __init__(self):
        super().__init__()
        self.base_url = ""
        self.client = httpx.AsyncClient(timeout=30.0, follow_redirects=True)

    def get_credential_fields(self) -> list[FieldSpec]:
        return [
            FieldSpec(
                key="base_url",
                label="Jira URL",
                type="url",
                required=True,
                placeholder="https://yourcompany.atlassian.net",
                help_text="Your Jira instance URL (Cloud or Server/Data Center)",
            ),
            FieldSpec(
                key="personal_token",
                label="Personal Access Token",
                type="password",
                required=True,
            ),
        ]

    def get_capabilities(self) -> list[Capability]:
        return [
            Capability(
                name="jira_search",
                description="Search for Jira issues using JQL (Jira Query Language)",
                parameters=[
                    CapabilityParameter(
                        name="jql",
                        type="string",
                        description='JQL query string (e.g., "project = PROJ AND status = Open")',
                        required=True,
                    ),
                    CapabilityParameter(
                        name="maxResults", type="number", description="Maximum number of results (default: 50)", default=50
                    ),
                    CapabilityParameter(
                        name="startAt", type="number", description="Starting index for pagination (default: 0)", default=0
                    ),
                    CapabilityParameter(name="fields", type="string", description="Comma-separated fields to return"),
                ],
            ),
            Capability(
                name="jira_get_issue",
                description="Get detailed information about a specific Jira issue",
                parameters=[
                    _ISSUE_KEY_PARAM,
                    CapabilityParameter(name="fields", type="string", description="Comma-separated fields to return"),
                    CapabilityParameter(
                        name="expand", type="string", description='Fields to expand (e.g., "changelog,renderedFields")'
                    ),
                ],
            ),
            _CREATE_ISSUE,
            Capability(
                name="jira_update_issue",
                description="Update an existing Jira issue",
                parameters=[
                    _ISSUE_KEY_PARAM,
                    CapabilityParameter(
                        name="fields", type="object", description="Fields to update as key-value pairs", required=True
                    ),
                ],
            ),
            Capability(
                name="jira_transition_issue",
                description="Change the status of an issue (e.g., Open -> In Progress)",
                parameters=[
                    _ISSUE_KEY_PARAM,
                    CapabilityParameter(name="transitionId", type="string", description="Transition ID", required=True),
                    CapabilityParameter(name="comment", type="string", description="Optional comment to add"),
                ],
            ),
            _ADD_COMMENT,
        ]

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._credentials.get('personal_token', '')}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _connect(self) -> None:
        base_url = str(self._credentials.get("base_url", "")).strip().rstrip("/")
        if not base_url.startswith(("http://", "https://")):
            base_url = f"https://{base_url}"
        self.base_url = base_url
        try:
            await self._request("GET", "/rest/api/2/myself")
        except httpx.HTTPError as e:
            raise RuntimeError(f"Failed to connect to Jira: {e}") from e
        log.info("Connected to Jira", base_url=self.base_url)

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        response = await self.client.request(
            method,
            f"{self.base_url}{path}",
            params=params,
            json=json,
            headers=self._headers,
        )
        response.raise_for_status()
        if response.status_code == 204 or not response.content:
            return {"success": True}
        return response.json()

    async def execute_capability(self, name: str, parameters: dict[str, Any]) -> CapabilityResult:
        return await self._dispatch(
            {
                "jira_search": self._search,
                "jira_get_issue": self._get_issue,
                "jira_create_issue": self._create_issue,
                "jira_update_issue": self._update_issue,
                "jira_transition_issue": self._transition_issue,
                "jira_add_comment": self._add_comment,
            },
            name,
            parameters,
        )

    async def _search(self, params: dict[str, Any]) -> Any:
        query: dict[str, Any] = {
            "jql": params["jql"],
            "maxResults": int(params.get("maxResults") or 50),
            "startAt": int(params.get("startAt") or 0),
        }
        if params.get("fields"):
            query["fields"] = params["fields"]
        return await self._request("GET", "/rest/api/2/search", params=query)

    async def _get_issue(self, params: dict[str, Any]) -> Any:
        query: dict[str, Any] = {}
        if params.get("fields"):
            query["fields"] = params["fields"]
        if params.get("expand"):
            query["expand"] = params["expand"]
        return await self._request("GET", f"/rest/api/2/issue/{quote(params['issueKey'])}", params=query or None)

    async def _create_issue(self, params: dict[str, Any]) -> Any:
        fields: dict[str, Any] = {
            "project": {"key": params["projectKey"]},
            "summary": params["summary"],
            "issuetype": {"name": params["issueType"]},
        }
        if params.get("description"):
            fields["description"] = params["description"]
        if params.get("priority"):
            fields["priority"] = {"name": params["priority"]}
        return await self._request("POST", "/rest/api/2/issue", json={"fields": fields})

    async def _update_issue(self, params: dict[str, Any]) -> Any:
        await self._request("PUT", f"/rest/api/2/issue/{quote(params['issueKey'])}", json={"fields": params["fields"]})
        return {"success": True}

    async def _transition_issue(self, params: dict[str, Any]) -> Any:
        payload: dict[str, Any] = {"transition": {"id": params["transitionId"]}}
        if params.get("comment"):
            payload["update"] = {"comment": [{"add": {"body": params["comment"]}}]}
        await self._request("POST", f"/rest/api/2/issue/{quote(params['issueKey'])}/transitions", json=payload)
        return CapabilityResult(
            success=True,
            data={"success": True},
            context_note=f"Issue {params['issueKey']} changed status; earlier reads of it are stale.",
        )

    async def _add_comment(self, params: dict[str, Any]) -> Any:
        return await self._request(
            "POST",
            f"/rest/api/2/issue/{quote(params['issueKey'])}/comment",
            json={"body": params["comment"]},
        )

    async def destroy(self) -> None:
        await super().destroy()
        await self.client.aclose()


_BASE_FIELDS = ["key", "summary", "status", "priority", "assignee", "issuetype"]
_INTENT_FIELDS: list[tuple[re.Pattern[str], list[str]]] = [
    (re.compile(r"\bcomment", re.IGNORECASE), ["comment"]),
    (re.compile(r"\b(created|updated|due|date|since|before|after|ago)\b", re.IGNORECASE),
     ["created", "updated", "duedate"]),
    (re.compile(r"\b(resolution|resolved|done|fixed)\b", re.IGNORECASE), ["resolution", "resolutiondate"]),
    (re.compile(r"\b(labels?|components?)\b", re.IGNORECASE), ["labels", "components"]),
    (re.compile(r"\b(version|release|fixversion)", re.IGNORECASE), ["fixVersions", "versions"]),
    (re.compile(r"\b(reporter|reported)\b", re.IGNORECASE), ["reporter"]),
    (re.compile(r"\b(text|description|details?)\b", re.IGNORECASE), ["description"]),
]


def select_fields(jql: str) -> list[str]:
    """Pick the issue fields worth requesting for a JQL query."""
    fields = list(_BASE_FIELDS)
    for pattern, extra in _INTENT_FIELDS:
        if pattern.search(jql or ""):
            fields.extend(f for f in extra if f not in fields)
    return fields


class JiraAgent(AgentBase):
    """Jira integration with query-aware field selection."""

    metadata = ProviderMetadata(
        id="jira-agent",
        name="Jira Smart Agent",
        description="Jira integration with dynamic field selection. Can search, create and comment on issues.",
        version="1.0.0",
        author="Synergy",
        tags=("jira", "atlassian", "issues", "search", "tickets"),
    )
    dependencies = ("jira",)

    def get_config_fields(self) -> list[FieldSpec]:
        return [
            FieldSpec(
                key="default_project",
                label="Default Project Key",
                placeholder="PROJ",
                help_text="Optional default project for searches",
            ),
            FieldSpec(
                key="max_results",
                label="Default Max Results",
                type="number",
                default=10,
            ),
        ]

    def get_capabilities(self) -> list[Capability]:
        return [
            Capability(
                name="jira_smart_search",
                description=(
                    "Search Jira issues with intelligent field selection. Fields are chosen from the "
                    "query intent unless given explicitly. Text search: text ~ \"keyword\"."
                ),
                parameters=[
                    CapabilityParameter(
                        name="jql", type="string", description="JQL query. Can include text~ for keyword search.",
                        required=True,
                    ),
                    CapabilityParameter(
                        name="fields", type="string", description="Optional comma-separated fields to return"
                    ),
                    CapabilityParameter(name="maxResults", type="number", description="Max results (default: 10)"),
                    CapabilityParameter(
                        name="maxComments", type="number", description="Limit comments per issue when included"
                    ),
                ],
            ),
            Capability(
                name="jira_get_issue",
                description="Get detailed information about a specific Jira issue.",
                parameters=[
                    _ISSUE_KEY_PARAM,
                    CapabilityParameter(name="fields", type="string", description="Specific fields to return"),
                    CapabilityParameter(name="expand", type="string", description="Fields to expand"),
                ],
            ),
            _CREATE_ISSUE,
            _ADD_COMMENT,
        ]

    async def execute_capability(self, name: str, parameters: dict[str, Any]) -> CapabilityResult:
        passthrough = self._passthrough(name)
        return await self._dispatch(
            {
                "jira_smart_search": self._smart_search,
                "jira_get_issue": passthrough,
                "jira_create_issue": passthrough,
                "jira_add_comment": passthrough,
            },
            name,
            parameters,
        )

    def _passthrough(self, name: str):
        async def _call(params: dict[str, Any]) -> CapabilityResult:
            return await self.require_dependency("jira").execute_capability(name, params)

        return _call

    def _scoped_jql(self, jql: str) -> str:
        project = str(self.config_value("default_project") or "").strip()
        if not project or re.search(r"\bproject\b", jql, re.IGNORECASE):
            return jql
        where, order = jql, ""
        order_match = re.search(r"\bORDER\s+BY\b", jql, re.IGNORECASE)
        if order_match:
            where, order = jql[:order_match.start()], jql[order_match.start():]
        where = where.strip()
        scoped = f"project = {project} AND ({where})" if where else f"project = {project}"
        return f"{scoped} {order.strip()}".strip()

    async def _smart_search(self, params: dict[str, Any]) -> CapabilityResult:
        jql = self._scoped_jql(str(params.get("jql", "")).strip())
        if params.get("fields"):
            fields = [f.strip() for f in str(params["fields"]).split(",") if f.strip()]
        else:
            fields = select_fields(jql)
        max_results = int(params.get("maxResults") or self.config_value("max_results") or 10)

        result = await self.require_dependency("jira").execute_capability(
            "jira_search",
            {"jql": jql, "maxResults": max_results, "fields": ",".join(fields)},
        )
        if not result.success:
            return result

        max_comments = params.get("maxComments")
        issues = [
            _compact_issue(issue, fields, int(max_comments) if max_comments is not None else None)
            for issue in (result.data or {}).get("issues", [])
        ]
        return CapabilityResult(
            success=True,
            data={
                "jql": jql,
                "fields": fields,
                "total": (result.data or {}).get("total", len(issues)),
                "issues": issues,
            },
        )


def _compact_issue(issue: dict[str, Any], fields: list[str], max_comments: int | None) -> dict[str, Any]:
    """Flatten a Jira issue payload to the requested fields."""
    raw = issue.get("fields", {}) or {}
    out: dict[str, Any] = {"key": issue.get("key")}
    for name in fields:
        if name == "key":
            continue
        value = raw.get(name)
        if isinstance(value, dict):
            value = value.get("displayName") or value.get("name") or value.get("value") or value
        if name == "comment" and isinstance(raw.get("comment"), dict):
            comments = raw["comment"].get("comments", [])
            if max_comments is not None:
                comments = comments[-max_comments:] if max_comments > 0 else []
            value = [
                {"author": (c.get("author") or {}).get("displayName"), "body": c.get("body")}
                for c in comments
            ]
        out[name] = value
    return out
