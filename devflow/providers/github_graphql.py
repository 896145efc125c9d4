"""GitHub Projects V2 client over GraphQL.

Projects V2 is only exposed through the GraphQL API, so project operations go
through an ``httpx`` connection pool instead of PyGithub. Responses are
translated into the ``devflow.exceptions`` hierarchy:

- HTTP 429, rate-limit 403s, 5xx, timeouts and ``RATE_LIMITED`` errors are
  transient
- "already exists" / "has already been taken" messages are conflicts
- ``NOT_FOUND`` errors are not-found
"""

from typing import Any

import httpx
import structlog

from devflow.exceptions import (
    ExternalConflictError,
    ExternalNotFoundError,
    ExternalServiceError,
    ExternalTransientError,
)
from devflow.models.domain import Project, ProjectField, ProjectFieldOption
from devflow.utils.connection_pool import HTTPConnectionPool
from devflow.utils.rate_limiter import TokenBucket
from devflow.utils.retry import RetryPolicy, call_with_retry

log = structlog.get_logger(__name__)

_FIELD_PARTS = """
    ... on ProjectV2FieldCommon { id name dataType }
    ... on ProjectV2SingleSelectField { options { id name } }
"""

_PROJECT_PARTS = f"""
fragment ProjectParts on ProjectV2 {{
  id
  number
  title
  url
  fields(first: 50) {{ nodes {{ {_FIELD_PARTS} }} }}
  views(first: 50) {{ nodes {{ id name }} }}
}}
"""

OWNER_ID_QUERY = """
query OwnerId($login: String!) {
  repositoryOwner(login: $login) { id }
}
"""

REPOSITORY_ID_QUERY = """
query RepositoryId($owner: String!, $name: String!) {
  repository(owner: $owner, name: $name) { id }
}
"""

FIND_PROJECT_QUERY = (
    """
query FindProject($login: String!, $query: String!) {
  repositoryOwner(login: $login) {
    ... on ProjectV2Owner {
      projectsV2(first: 20, query: $query) { nodes { ...ProjectParts } }
    }
  }
}
"""
    + _PROJECT_PARTS
)

GET_PROJECT_QUERY = (
    """
query GetProject($id: ID!) {
  node(id: $id) { ... on ProjectV2 { ...ProjectParts } }
}
"""
    + _PROJECT_PARTS
)

CREATE_PROJECT_MUTATION = (
    """
mutation CreateProject($ownerId: ID!, $title: String!) {
  createProjectV2(input: {ownerId: $ownerId, title: $title}) {
    projectV2 { ...ProjectParts }
  }
}
"""
    + _PROJECT_PARTS
)

UPDATE_PROJECT_MUTATION = """
mutation UpdateProject($projectId: ID!, $shortDescription: String, $readme: String, $public: Boolean) {
  updateProjectV2(input: {projectId: $projectId, shortDescription: $shortDescription, readme: $readme, public: $public}) {
    projectV2 { id }
  }
}
"""

CREATE_FIELD_MUTATION = f"""
mutation CreateField($input: CreateProjectV2FieldInput!) {{
  createProjectV2Field(input: $input) {{
    projectV2Field {{ {_FIELD_PARTS} }}
  }}
}}
"""

CREATE_VIEW_MUTATION = """
mutation CreateView($projectId: ID!, $name: String!, $layout: ProjectV2ViewLayout!) {
  createProjectV2View(input: {projectId: $projectId, name: $name, layout: $layout}) {
    projectV2View { id name layout }
  }
}
"""

ADD_ITEM_MUTATION = """
mutation AddItem($projectId: ID!, $contentId: ID!) {
  addProjectV2ItemById(input: {projectId: $projectId, contentId: $contentId}) {
    item { id }
  }
}
"""

UPDATE_ITEM_FIELD_MUTATION = """
mutation UpdateItemField($projectId: ID!, $itemId: ID!, $fieldId: ID!, $value: ProjectV2FieldValue!) {
  updateProjectV2ItemFieldValue(input: {projectId: $projectId, itemId: $itemId, fieldId: $fieldId, value: $value}) {
    projectV2Item { id }
  }
}
"""

LINK_REPOSITORY_MUTATION = """
mutation LinkRepository($projectId: ID!, $repositoryId: ID!) {
  linkProjectV2ToRepository(input: {projectId: $projectId, repositoryId: $repositoryId}) {
    repository { id }
  }
}
"""

VIEWER_QUERY = "query Viewer { viewer { login } }"


def _parse_field(node: dict[str, Any]) -> ProjectField:
    return ProjectField(
        id=node["id"],
        name=node["name"],
        data_type=node.get("dataType") or "TEXT",
        options=[ProjectFieldOption(id=o["id"], name=o["name"]) for o in node.get("options") or []],
    )


def parse_project(node: dict[str, Any]) -> Project:
    """Build a ``Project`` from a ``ProjectParts`` fragment."""
    field_nodes = (node.get("fields") or {}).get("nodes") or []
    view_nodes = (node.get("views") or {}).get("nodes") or []
    return Project(
        id=node["id"],
        title=node["title"],
        number=node.get("number"),
        url=node.get("url") or "",
        # Built-in fields that are not ProjectV2FieldCommon come back empty
        fields=[_parse_field(f) for f in field_nodes if f and "id" in f],
        views=[v["name"] for v in view_nodes if v],
    )


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


class GitHubProjectsClient:
    """Projects V2 operations over the GraphQL endpoint."""

    def __init__(
        self,
        token: str,
        graphql_url: str = "https://api.github.com/graphql",
        timeout: float = 30.0,
        max_connections: int = 10,
        limiter: TokenBucket | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        url = httpx.URL(graphql_url)
        self.graphql_path = url.path or "/graphql"
        self.pool = HTTPConnectionPool(
            base_url=str(url.copy_with(path="/")),
            max_connections=max_connections,
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
            },
        )
        self.limiter = limiter or TokenBucket(rate=0)
        self.retry_policy = retry_policy or RetryPolicy()

    async def connect(self) -> None:
        await self.pool.initialize()

    async def close(self) -> None:
        await self.pool.close()

    async def execute(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run a query or mutation and return its ``data`` object."""

        async def graphql_request() -> dict[str, Any]:
            await self.limiter.acquire()
            try:
                response = await self.pool.post(
                    self.graphql_path,
                    json={"query": query, "variables": variables or {}},
                )
            except httpx.TransportError as e:
                raise ExternalTransientError(f"GraphQL transport error: {e}") from e
            return self._handle_response(response)

        return await call_with_retry(self.retry_policy, graphql_request)

    @staticmethod
    def _handle_response(response: httpx.Response) -> dict[str, Any]:
        status = response.status_code
        if status == 429 or (status == 403 and "rate limit" in response.text.lower()):
            raise ExternalTransientError(
                "GraphQL rate limit exceeded",
                status_code=status,
                response_text=response.text,
                retry_after=_retry_after(response),
            )
        if status >= 500:
            raise ExternalTransientError("GraphQL server error", status_code=status, response_text=response.text)
        if status >= 400:
            raise ExternalServiceError("GraphQL request failed", status_code=status, response_text=response.text)

        payload = response.json()
        errors = payload.get("errors") or []
        if errors:
            messages = "; ".join(str(e.get("message", "")) for e in errors)
            types = {e.get("type") for e in errors}
            lowered = messages.lower()
            if "RATE_LIMITED" in types:
                raise ExternalTransientError(f"GraphQL rate limited: {messages}", status_code=status)
            if "already exist" in lowered or "already been taken" in lowered:
                raise ExternalConflictError(messages, status_code=status)
            if "NOT_FOUND" in types:
                raise ExternalNotFoundError(messages, status_code=status)
            raise ExternalServiceError(f"GraphQL error: {messages}", status_code=status)
        return payload.get("data") or {}

    # -- lookups -------------------------------------------------------------

    async def get_owner_node_id(self, login: str) -> str:
        data = await self.execute(OWNER_ID_QUERY, {"login": login})
        owner = data.get("repositoryOwner")
        if not owner:
            raise ExternalNotFoundError(f"Owner not found: {login}")
        return owner["id"]

    async def get_repository_node_id(self, owner: str, name: str) -> str:
        data = await self.execute(REPOSITORY_ID_QUERY, {"owner": owner, "name": name})
        repository = data.get("repository")
        if not repository:
            raise ExternalNotFoundError(f"Repository not found: {owner}/{name}")
        return repository["id"]

    async def find_project(self, owner: str, title: str) -> Project | None:
        data = await self.execute(FIND_PROJECT_QUERY, {"login": owner, "query": title})
        nodes = ((data.get("repositoryOwner") or {}).get("projectsV2") or {}).get("nodes") or []
        for node in nodes:
            if node and node.get("title") == title:
                return parse_project(node)
        return None

    async def get_project(self, project_id: str) -> Project:
        data = await self.execute(GET_PROJECT_QUERY, {"id": project_id})
        node = data.get("node")
        if not node:
            raise ExternalNotFoundError(f"Project not found: {project_id}")
        return parse_project(node)

    async def viewer_login(self) -> str:
        data = await self.execute(VIEWER_QUERY)
        return (data.get("viewer") or {}).get("login", "")

    # -- mutations -----------------------------------------------------------

    async def create_project(
        self,
        owner_id: str,
        title: str,
        description: str = "",
        readme: str = "",
        public: bool = False,
    ) -> Project:
        data = await self.execute(CREATE_PROJECT_MUTATION, {"ownerId": owner_id, "title": title})
        project = parse_project(data["createProjectV2"]["projectV2"])
        await self.execute(
            UPDATE_PROJECT_MUTATION,
            {
                "projectId": project.id,
                "shortDescription": description,
                "readme": readme,
                "public": public,
            },
        )
        log.info("project_created", project_id=project.id, title=title, number=project.number)
        return project

    async def create_project_field(
        self,
        project_id: str,
        name: str,
        data_type: str,
        options: list[dict[str, str]] | None = None,
    ) -> ProjectField:
        field_input: dict[str, Any] = {"projectId": project_id, "name": name, "dataType": data_type}
        if data_type == "SINGLE_SELECT":
            field_input["singleSelectOptions"] = [
                {"name": o["name"], "color": o.get("color", "GRAY"), "description": o.get("description", "")}
                for o in options or []
            ]
        data = await self.execute(CREATE_FIELD_MUTATION, {"input": field_input})
        return _parse_field(data["createProjectV2Field"]["projectV2Field"])

    async def create_project_view(self, project_id: str, name: str, layout: str) -> str:
        data = await self.execute(CREATE_VIEW_MUTATION, {"projectId": project_id, "name": name, "layout": layout})
        return data["createProjectV2View"]["projectV2View"]["id"]

    async def add_project_item(self, project_id: str, content_id: str) -> str:
        data = await self.execute(ADD_ITEM_MUTATION, {"projectId": project_id, "contentId": content_id})
        return data["addProjectV2ItemById"]["item"]["id"]

    async def update_project_item_field(
        self,
        project_id: str,
        item_id: str,
        field: ProjectField,
        value: str,
    ) -> None:
        if field.data_type == "SINGLE_SELECT":
            field_value: dict[str, Any] = {"singleSelectOptionId": value}
        elif field.data_type == "NUMBER":
            field_value = {"number": float(value)}
        elif field.data_type == "DATE":
            field_value = {"date": value}
        else:
            field_value = {"text": value}
        await self.execute(
            UPDATE_ITEM_FIELD_MUTATION,
            {"projectId": project_id, "itemId": item_id, "fieldId": field.id, "value": field_value},
        )

    async def link_repository_to_project(self, project_id: str, repository_id: str) -> None:
        await self.execute(LINK_REPOSITORY_MUTATION, {"projectId": project_id, "repositoryId": repository_id})
