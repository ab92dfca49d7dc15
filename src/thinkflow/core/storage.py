"""persistence backends.

the remote side is a row store (postgrest / supabase rest) reached through
select / upsert / delete filtered by project id and a natural key. the local
side is a per-project json cache that seeds the canvas before any network
round trip.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

import httpx

from .models import Edge, Node

logger = logging.getLogger(__name__)


# --- configuration ---

NODES_TABLE = "nodes"
EDGES_TABLE = "edges"
PROJECTS_TABLE = "projects"
REMOTE_TIMEOUT = 30.0


class StorageError(Exception):
    """a remote store call failed."""

    pass


@runtime_checkable
class RemoteStore(Protocol):
    """row store filtered by project id."""

    async def select(self, table: str, project_id: str) -> list[dict]:
        ...

    async def upsert(self, table: str, rows: list[dict], on_conflict: str) -> None:
        ...

    async def delete(self, table: str, project_id: str, key_column: str, keys: list[str]) -> None:
        ...

    async def list_projects(self) -> list[dict]:
        ...

    async def create_project(self, name: str, description: Optional[str] = None) -> dict:
        ...

    async def delete_project(self, project_id: str) -> None:
        ...


class PostgrestStore:
    """remote store speaking the postgrest dialect (supabase `/rest/v1`)."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        access_token: Optional[str] = None,
        user_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.access_token = access_token or api_key
        self.user_id = user_id
        self._transport = transport

    def _url(self, table: str) -> str:
        return f"{self.base_url}/rest/v1/{table}"

    def _headers(self, prefer: Optional[str] = None) -> dict:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(self, method: str, table: str, **kwargs) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=REMOTE_TIMEOUT, transport=self._transport) as client:
                response = await client.request(method, self._url(table), **kwargs)
                response.raise_for_status()
                return response
        except httpx.HTTPStatusError as e:
            raise StorageError(f"{method} {table} failed: {e.response.status_code} {e.response.text[:200]}") from e
        except httpx.TransportError as e:
            raise StorageError(f"{method} {table} failed: {e}") from e

    async def select(self, table: str, project_id: str) -> list[dict]:
        response = await self._request(
            "GET", table,
            params={"select": "*", "project_id": f"eq.{project_id}"},
            headers=self._headers(),
        )
        return response.json()

    async def upsert(self, table: str, rows: list[dict], on_conflict: str) -> None:
        await self._request(
            "POST", table,
            params={"on_conflict": on_conflict},
            json=rows,
            headers=self._headers("resolution=merge-duplicates,return=minimal"),
        )

    async def delete(self, table: str, project_id: str, key_column: str, keys: list[str]) -> None:
        quoted = ",".join(f'"{k}"' for k in keys)
        await self._request(
            "DELETE", table,
            params={"project_id": f"eq.{project_id}", key_column: f"in.({quoted})"},
            headers=self._headers(),
        )

    async def list_projects(self) -> list[dict]:
        response = await self._request(
            "GET", PROJECTS_TABLE,
            params={"select": "*", "order": "updated_at.desc"},
            headers=self._headers(),
        )
        return response.json()

    async def create_project(self, name: str, description: Optional[str] = None) -> dict:
        if not self.user_id:
            raise StorageError("creating a project needs a signed-in user")
        response = await self._request(
            "POST", PROJECTS_TABLE,
            json={"user_id": self.user_id, "name": name, "description": description},
            headers=self._headers("return=representation"),
        )
        rows = response.json()
        return rows[0] if isinstance(rows, list) else rows

    async def delete_project(self, project_id: str) -> None:
        await self._request(
            "DELETE", PROJECTS_TABLE,
            params={"id": f"eq.{project_id}"},
            headers=self._headers(),
        )


class InMemoryStore:
    """remote store kept in process memory, for mock mode and tests."""

    def __init__(self) -> None:
        self.tables: dict[str, list[dict]] = {NODES_TABLE: [], EDGES_TABLE: [], PROJECTS_TABLE: []}
        self.calls: list[tuple[str, str]] = []  # (operation, table)
        self.fail = False  # simulate an outage

    def _check(self, operation: str, table: str) -> None:
        self.calls.append((operation, table))
        if self.fail:
            raise StorageError(f"{operation} {table} failed: store unavailable")

    async def select(self, table: str, project_id: str) -> list[dict]:
        self._check("select", table)
        return [dict(r) for r in self.tables.setdefault(table, []) if r.get("project_id") == project_id]

    async def upsert(self, table: str, rows: list[dict], on_conflict: str) -> None:
        self._check("upsert", table)
        keys = on_conflict.split(",")
        existing = self.tables.setdefault(table, [])
        for row in rows:
            match = next((r for r in existing if all(r.get(k) == row.get(k) for k in keys)), None)
            if match is not None:
                match.update(row)
            else:
                existing.append(dict(row))

    async def delete(self, table: str, project_id: str, key_column: str, keys: list[str]) -> None:
        self._check("delete", table)
        doomed = set(keys)
        self.tables[table] = [
            r for r in self.tables.setdefault(table, [])
            if not (r.get("project_id") == project_id and r.get(key_column) in doomed)
        ]

    async def list_projects(self) -> list[dict]:
        self._check("select", PROJECTS_TABLE)
        return sorted(self.tables[PROJECTS_TABLE], key=lambda p: p["updated_at"], reverse=True)

    async def create_project(self, name: str, description: Optional[str] = None) -> dict:
        self._check("insert", PROJECTS_TABLE)
        now = datetime.now(timezone.utc).isoformat()
        project = {
            "id": str(uuid.uuid4()),
            "name": name,
            "description": description,
            "created_at": now,
            "updated_at": now,
        }
        self.tables[PROJECTS_TABLE].append(project)
        return dict(project)

    async def delete_project(self, project_id: str) -> None:
        self._check("delete", PROJECTS_TABLE)
        self.tables[PROJECTS_TABLE] = [p for p in self.tables[PROJECTS_TABLE] if p["id"] != project_id]
        for table in (NODES_TABLE, EDGES_TABLE):
            self.tables[table] = [r for r in self.tables[table] if r.get("project_id") != project_id]


class LocalCache:
    """durable per-project copy of the canvas.

    image payloads are stripped from node blobs to keep files small.
    """

    def __init__(self, cache_dir: Path):
        self.cache_dir = cache_dir

    def _path(self, project_id: str, part: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_" else "-" for c in project_id)
        return self.cache_dir / f"thinkflow_{safe}_{part}.json"

    def save(self, project_id: str, nodes: list[Node], edges: list[Edge], collapsed_ids: list[str]) -> None:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        node_blobs = []
        for node in nodes:
            blob = node.to_dict()
            blob["image_url"] = None
            node_blobs.append(blob)
        self._write(project_id, "nodes", node_blobs)
        self._write(project_id, "edges", [e.to_dict() for e in edges])
        self._write(project_id, "collapsed", list(collapsed_ids))

    def _write(self, project_id: str, part: str, payload) -> None:
        path = self._path(project_id, part)
        tmp = path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump(payload, f)
        tmp.replace(path)

    def load(self, project_id: str) -> Optional[tuple[list[Node], list[Edge], list[str]]]:
        """cached canvas, or None when nothing usable is cached."""
        nodes_path = self._path(project_id, "nodes")
        if not nodes_path.exists():
            return None
        try:
            with open(nodes_path) as f:
                nodes = [Node.from_dict(d) for d in json.load(f)]
            edges_path = self._path(project_id, "edges")
            edges = []
            if edges_path.exists():
                with open(edges_path) as f:
                    edges = [Edge.from_dict(d) for d in json.load(f)]
            collapsed_path = self._path(project_id, "collapsed")
            collapsed = []
            if collapsed_path.exists():
                with open(collapsed_path) as f:
                    collapsed = [str(c) for c in json.load(f)]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning("ignoring unreadable cache for %s: %s", project_id, e)
            return None
        return nodes, edges, collapsed

    def clear(self, project_id: str) -> None:
        for part in ("nodes", "edges", "collapsed"):
            self._path(project_id, part).unlink(missing_ok=True)


class ProjectManager:
    """project list on the remote store, local cache cleanup on delete."""

    def __init__(self, remote: RemoteStore, local: Optional[LocalCache] = None):
        self.remote = remote
        self.local = local
        self.projects: list[dict] = []

    async def list_projects(self) -> list[dict]:
        self.projects = await self.remote.list_projects()
        return self.projects

    async def create_project(self, name: str, description: Optional[str] = None) -> dict:
        name = (name or "").strip()
        if not name:
            raise ValueError("project name is required")
        project = await self.remote.create_project(name, description)
        self.projects.insert(0, project)
        logger.info("created project %s (%s)", project.get("id"), name)
        return project

    async def delete_project(self, project_id: str) -> None:
        await self.remote.delete_project(project_id)
        if self.local is not None:
            self.local.clear(project_id)
        self.projects = [p for p in self.projects if p.get("id") != project_id]
        logger.info("deleted project %s", project_id)

    def get(self, project_id: str) -> Optional[dict]:
        return next((p for p in self.projects if p.get("id") == project_id), None)
