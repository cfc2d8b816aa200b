"""
Repository pattern for data access.

Defines the narrow read interface the evaluator depends on and a SQLite
implementation that also carries the management writes.
"""

import sqlite3
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Tuple

from .db import DEFAULT_DB_PATH, get_connection
from .models import EmergencyOverride, FlagDefinition, KillSwitchScope, TenantOverride


class FlagStoreError(Exception):
    """Raised when the backing store cannot be read or written."""


class FlagNotFoundError(FlagStoreError):
    """Raised when a write targets a flag that does not exist."""


class FlagAlreadyExistsError(FlagStoreError):
    """Raised when creating a flag whose key is taken."""


class FlagStore(Protocol):
    """Read interface consumed by the evaluator. Absence is not an error."""

    def get_flag(self, flag_key: str) -> Optional[FlagDefinition]: ...

    def list_flags(self) -> List[FlagDefinition]: ...

    def get_tenant_override(self, tenant_id: str, flag_key: str) -> Optional[TenantOverride]: ...

    def get_kill_switch(self, flag_key: Optional[str] = None) -> Optional[EmergencyOverride]: ...


def _scope_key(flag_key: Optional[str]) -> str:
    if flag_key is None:
        return KillSwitchScope.GLOBAL.value
    return f"FLAG:{flag_key}"


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class FlagRepository:
    """SQLite-backed flag store.

    Every call opens its own connection and closes it before returning.
    All sqlite3 errors surface as FlagStoreError.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize_schema(self) -> None:
        """Create the flag, override and kill switch tables if they don't exist."""
        conn = get_connection(self.db_path)
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS feature_flag (
                    flag_key TEXT PRIMARY KEY,
                    description TEXT NOT NULL DEFAULT '',
                    default_enabled INTEGER NOT NULL DEFAULT 0,
                    owner TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL,
                    expires_at TEXT
                );
                CREATE TABLE IF NOT EXISTS tenant_override (
                    tenant_id TEXT NOT NULL,
                    flag_key TEXT NOT NULL REFERENCES feature_flag(flag_key) ON DELETE CASCADE,
                    enabled INTEGER NOT NULL,
                    updated_at TEXT NOT NULL,
                    updated_by TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, flag_key)
                );
                CREATE TABLE IF NOT EXISTS emergency_override (
                    scope TEXT PRIMARY KEY,
                    flag_key TEXT,
                    enabled INTEGER NOT NULL,
                    reason TEXT NOT NULL DEFAULT '',
                    activated_at TEXT NOT NULL,
                    activated_by TEXT NOT NULL
                );
            """)
            conn.commit()
        except sqlite3.Error as e:
            raise FlagStoreError(f"Failed to initialize schema: {e}") from e
        finally:
            conn.close()

    # Reads

    def get_flag(self, flag_key: str) -> Optional[FlagDefinition]:
        row = self._fetch_one(
            "SELECT flag_key, description, default_enabled, owner, created_at, expires_at "
            "FROM feature_flag WHERE flag_key = ?",
            (flag_key,),
        )
        return self._row_to_flag(row) if row else None

    def list_flags(self) -> List[FlagDefinition]:
        rows = self._fetch_all(
            "SELECT flag_key, description, default_enabled, owner, created_at, expires_at "
            "FROM feature_flag ORDER BY flag_key",
            (),
        )
        return [self._row_to_flag(row) for row in rows]

    def get_tenant_override(self, tenant_id: str, flag_key: str) -> Optional[TenantOverride]:
        row = self._fetch_one(
            "SELECT tenant_id, flag_key, enabled, updated_at, updated_by "
            "FROM tenant_override WHERE tenant_id = ? AND flag_key = ?",
            (tenant_id, flag_key),
        )
        return self._row_to_override(row) if row else None

    def list_tenant_overrides(self, flag_key: str) -> List[TenantOverride]:
        rows = self._fetch_all(
            "SELECT tenant_id, flag_key, enabled, updated_at, updated_by "
            "FROM tenant_override WHERE flag_key = ? ORDER BY tenant_id",
            (flag_key,),
        )
        return [self._row_to_override(row) for row in rows]

    def get_kill_switch(self, flag_key: Optional[str] = None) -> Optional[EmergencyOverride]:
        row = self._fetch_one(
            "SELECT flag_key, enabled, reason, activated_at, activated_by "
            "FROM emergency_override WHERE scope = ?",
            (_scope_key(flag_key),),
        )
        if not row:
            return None
        return EmergencyOverride(
            flag_key=row[0],
            enabled=bool(row[1]),
            reason=row[2],
            activated_at=datetime.fromisoformat(row[3]),
            activated_by=row[4],
        )

    # Writes

    def create_flag(self, flag: FlagDefinition) -> None:
        """Insert a new flag.

        Raises:
            FlagAlreadyExistsError: If the key is already taken
        """
        try:
            self._execute(
                "INSERT INTO feature_flag "
                "(flag_key, description, default_enabled, owner, created_at, expires_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    flag.key,
                    flag.description,
                    int(flag.default_enabled),
                    flag.owner,
                    flag.created_at.isoformat(),
                    flag.expires_at.isoformat() if flag.expires_at else None,
                ),
            )
        except FlagStoreError as e:
            if isinstance(e.__cause__, sqlite3.IntegrityError):
                raise FlagAlreadyExistsError(f"Flag already exists: {flag.key}") from e
            raise

    def update_flag(
        self,
        flag_key: str,
        *,
        description: Optional[str] = None,
        default_enabled: Optional[bool] = None,
        owner: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> FlagDefinition:
        """Update the given fields of an existing flag and return it.

        Raises:
            FlagNotFoundError: If the flag does not exist
        """
        updates: Dict[str, object] = {}
        if description is not None:
            updates["description"] = description
        if default_enabled is not None:
            updates["default_enabled"] = int(default_enabled)
        if owner is not None:
            updates["owner"] = owner
        if expires_at is not None:
            updates["expires_at"] = expires_at.isoformat()

        if updates:
            assignments = ", ".join(f"{column} = ?" for column in updates)
            changed = self._execute(
                f"UPDATE feature_flag SET {assignments} WHERE flag_key = ?",
                (*updates.values(), flag_key),
            )
            if changed == 0:
                raise FlagNotFoundError(f"Flag not found: {flag_key}")

        flag = self.get_flag(flag_key)
        if flag is None:
            raise FlagNotFoundError(f"Flag not found: {flag_key}")
        return flag

    def set_tenant_override(self, tenant_id: str, flag_key: str, enabled: bool, updated_by: str) -> TenantOverride:
        """Create or replace a tenant override.

        Raises:
            FlagNotFoundError: If the flag does not exist
        """
        override = TenantOverride(
            tenant_id=tenant_id,
            flag_key=flag_key,
            enabled=enabled,
            updated_at=datetime.now(),
            updated_by=updated_by,
        )
        try:
            self._execute(
                "INSERT OR REPLACE INTO tenant_override "
                "(tenant_id, flag_key, enabled, updated_at, updated_by) VALUES (?, ?, ?, ?, ?)",
                (tenant_id, flag_key, int(enabled), override.updated_at.isoformat(), updated_by),
            )
        except FlagStoreError as e:
            if isinstance(e.__cause__, sqlite3.IntegrityError):
                raise FlagNotFoundError(f"Flag not found: {flag_key}") from e
            raise
        return override

    def remove_tenant_override(self, tenant_id: str, flag_key: str) -> bool:
        """Delete a tenant override; returns False when none existed."""
        changed = self._execute(
            "DELETE FROM tenant_override WHERE tenant_id = ? AND flag_key = ?",
            (tenant_id, flag_key),
        )
        return changed > 0

    def set_kill_switch(
        self,
        flag_key: Optional[str],
        enabled: bool,
        reason: str,
        activated_by: str,
    ) -> EmergencyOverride:
        """Engage or release a kill switch; flag_key None targets every flag."""
        record = EmergencyOverride(
            flag_key=flag_key,
            enabled=enabled,
            reason=reason,
            activated_at=datetime.now(),
            activated_by=activated_by,
        )
        self._execute(
            "INSERT OR REPLACE INTO emergency_override "
            "(scope, flag_key, enabled, reason, activated_at, activated_by) VALUES (?, ?, ?, ?, ?, ?)",
            (_scope_key(flag_key), flag_key, int(enabled), reason, record.activated_at.isoformat(), activated_by),
        )
        return record

    # Helpers

    def _fetch_one(self, query: str, params: Tuple) -> Optional[tuple]:
        conn = get_connection(self.db_path)
        try:
            return conn.execute(query, params).fetchone()
        except sqlite3.Error as e:
            raise FlagStoreError(str(e)) from e
        finally:
            conn.close()

    def _fetch_all(self, query: str, params: Tuple) -> List[tuple]:
        conn = get_connection(self.db_path)
        try:
            return conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            raise FlagStoreError(str(e)) from e
        finally:
            conn.close()

    def _execute(self, query: str, params: Tuple) -> int:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(query, params)
            conn.commit()
            return cursor.rowcount
        except sqlite3.Error as e:
            conn.rollback()
            raise FlagStoreError(str(e)) from e
        finally:
            conn.close()

    @staticmethod
    def _row_to_flag(row: tuple) -> FlagDefinition:
        return FlagDefinition(
            key=row[0],
            description=row[1],
            default_enabled=bool(row[2]),
            owner=row[3],
            created_at=datetime.fromisoformat(row[4]),
            expires_at=_parse_dt(row[5]),
        )

    @staticmethod
    def _row_to_override(row: tuple) -> TenantOverride:
        return TenantOverride(
            tenant_id=row[0],
            flag_key=row[1],
            enabled=bool(row[2]),
            updated_at=datetime.fromisoformat(row[3]),
            updated_by=row[4],
        )


class InMemoryFlagStore:
    """Dictionary-backed flag store for tests and embedding."""

    def __init__(self):
        self._flags: Dict[str, FlagDefinition] = {}
        self._overrides: Dict[Tuple[str, str], TenantOverride] = {}
        self._kill_switches: Dict[str, EmergencyOverride] = {}

    def add_flag(self, flag: FlagDefinition) -> None:
        self._flags[flag.key] = flag

    def set_tenant_override(self, tenant_id: str, flag_key: str, enabled: bool, updated_by: str = "test") -> None:
        self._overrides[(tenant_id, flag_key)] = TenantOverride(
            tenant_id=tenant_id,
            flag_key=flag_key,
            enabled=enabled,
            updated_at=datetime.now(),
            updated_by=updated_by,
        )

    def set_kill_switch(self, flag_key: Optional[str], enabled: bool, reason: str = "", activated_by: str = "test") -> None:
        self._kill_switches[_scope_key(flag_key)] = EmergencyOverride(
            flag_key=flag_key,
            enabled=enabled,
            reason=reason,
            activated_at=datetime.now(),
            activated_by=activated_by,
        )

    def get_flag(self, flag_key: str) -> Optional[FlagDefinition]:
        return self._flags.get(flag_key)

    def list_flags(self) -> List[FlagDefinition]:
        return [self._flags[key] for key in sorted(self._flags)]

    def get_tenant_override(self, tenant_id: str, flag_key: str) -> Optional[TenantOverride]:
        return self._overrides.get((tenant_id, flag_key))

    def get_kill_switch(self, flag_key: Optional[str] = None) -> Optional[EmergencyOverride]:
        return self._kill_switches.get(_scope_key(flag_key))
