"""
Settings, session and saved-project persistence.

These records sit next to the sync cache and use the same backends, but they
describe what the user is tracking rather than what was fetched.
"""

import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from .cache import SCHEMA_VERSION, JsonFileBackend, MemoryBackend
from .models import SavedProject, Settings, WatchedAccount
from .utils import address_key, short_address, utcnow

logger = logging.getLogger(__name__)

SETTINGS_KEY = "settings"
SESSION_KEY = "session"
PROJECTS_KEY = "projects"


def _versioned(record: Optional[Dict[str, Any]], name: str) -> Optional[Dict[str, Any]]:
    if record is None:
        return None
    version = record.get("schema_version", SCHEMA_VERSION)
    if version > SCHEMA_VERSION:
        logger.warning(f"Ignoring {name} record with newer schema version {version}")
        return None
    return record


def new_project_id() -> str:
    return f"proj_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class SettingsStore:
    """Flat `{refresh_interval, helius_api_key}` settings record."""

    def __init__(self, backend=None):
        self.backend = backend if backend is not None else MemoryBackend()

    def load(self) -> Settings:
        record = _versioned(self.backend.get(SETTINGS_KEY), SETTINGS_KEY)
        return Settings.from_dict(record) if record else Settings()

    def save(self, settings: Settings) -> None:
        record = settings.to_dict()
        record["schema_version"] = SCHEMA_VERSION
        self.backend.put(SETTINGS_KEY, record)


class SessionStore:
    """The last watch list, tracked mint and active project."""

    def __init__(self, backend=None):
        self.backend = backend if backend is not None else MemoryBackend()

    def _load(self) -> Dict[str, Any]:
        return _versioned(self.backend.get(SESSION_KEY), SESSION_KEY) or {}

    def _update(self, **fields: Any) -> None:
        record = self._load()
        record.update(fields)
        record["schema_version"] = SCHEMA_VERSION
        self.backend.put(SESSION_KEY, record)

    def load_wallets(self) -> List[WatchedAccount]:
        return [WatchedAccount.from_dict(w) for w in self._load().get("wallets", [])]

    def save_wallets(self, wallets: List[WatchedAccount]) -> None:
        self._update(wallets=[w.to_dict() for w in wallets])

    def load_asset(self) -> Optional[str]:
        return self._load().get("asset_id") or None

    def save_asset(self, asset_id: Optional[str]) -> None:
        self._update(asset_id=asset_id)

    def load_active_project(self) -> Optional[str]:
        return self._load().get("active_project_id") or None

    def save_active_project(self, project_id: Optional[str]) -> None:
        self._update(active_project_id=project_id)

    def clear(self) -> None:
        self.backend.delete(SESSION_KEY)


class ProjectStore:
    """Saved projects, unique by asset id (case-insensitive), newest first."""

    def __init__(self, backend=None, clock: Callable = utcnow):
        self.backend = backend if backend is not None else MemoryBackend()
        self.clock = clock
        self._lock = threading.RLock()

    def _write(self, projects: List[SavedProject]) -> None:
        self.backend.put(PROJECTS_KEY, {
            "schema_version": SCHEMA_VERSION,
            "projects": [p.to_dict() for p in projects],
        })

    def list_projects(self) -> List[SavedProject]:
        record = _versioned(self.backend.get(PROJECTS_KEY), PROJECTS_KEY) or {}
        projects = []
        for item in record.get("projects", []):
            try:
                projects.append(SavedProject.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.error(f"Skipping unreadable saved project: {e}")
        return projects

    def get_project(self, id_or_asset: str) -> Optional[SavedProject]:
        key = address_key(id_or_asset)
        for project in self.list_projects():
            if project.id == id_or_asset or address_key(project.asset_id) == key:
                return project
        return None

    def save_project(self, project: SavedProject) -> SavedProject:
        """Insert or update the project for `project.asset_id`.

        An existing project keeps its id and creation time.
        """
        with self._lock:
            now = self.clock()
            projects = self.list_projects()
            key = address_key(project.asset_id)
            index = next(
                (i for i, p in enumerate(projects) if address_key(p.asset_id) == key), None)

            if index is not None:
                existing = projects[index]
                project.id = existing.id
                project.created_at = existing.created_at or now
            else:
                project.id = project.id or new_project_id()
                project.created_at = project.created_at or now
            project.last_scanned = now

            if index is not None:
                projects[index] = project
            else:
                projects.insert(0, project)
            self._write(projects)

        logger.info(f"Saved project {project.symbol} ({short_address(project.asset_id)})")
        return project

    def delete_project(self, project_id: str) -> bool:
        with self._lock:
            projects = self.list_projects()
            remaining = [p for p in projects if p.id != project_id]
            if len(remaining) == len(projects):
                return False
            self._write(remaining)
        return True

    def update_wallets(self, project_id: str, wallets: List[WatchedAccount]) -> bool:
        with self._lock:
            projects = self.list_projects()
            for project in projects:
                if project.id == project_id:
                    project.wallets = list(wallets)
                    project.last_scanned = self.clock()
                    self._write(projects)
                    return True
        return False

    def update_cached_data(self, project_id: str,
                           balances: Optional[List[Dict[str, Any]]] = None,
                           transfers: Optional[List[Dict[str, Any]]] = None,
                           asset_info: Optional[Dict[str, Any]] = None) -> bool:
        """Refresh the snapshot stored with a project; omitted parts are kept."""
        with self._lock:
            projects = self.list_projects()
            for project in projects:
                if project.id != project_id:
                    continue
                if balances is not None:
                    project.cached_balances = balances
                if transfers is not None:
                    project.cached_transfers = transfers
                if asset_info is not None:
                    project.cached_asset_info = asset_info
                project.last_scanned = self.clock()
                self._write(projects)
                logger.debug(f"Cached data updated for project {project_id}")
                return True
        return False

    def clear_all(self) -> None:
        self.backend.delete(PROJECTS_KEY)


class Storage:
    """The three user-facing stores over one backend."""

    def __init__(self, backend=None, clock: Callable = utcnow):
        backend = backend if backend is not None else MemoryBackend()
        self.settings = SettingsStore(backend)
        self.session = SessionStore(backend)
        self.projects = ProjectStore(backend, clock=clock)

    @classmethod
    def on_disk(cls, data_dir: str) -> "Storage":
        return cls(JsonFileBackend(data_dir))
