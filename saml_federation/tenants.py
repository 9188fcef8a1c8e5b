"""Per-tenant IdP storage.

Two repositories share one interface: :class:`StaticTenantRepository` serves
the ``idps`` section of the application config, :class:`SqliteTenantRepository`
keeps tenants in a SQLite file so they can be managed from the CLI.
"""
import json
import logging
import os
import sqlite3
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass

from .config import IdpConfig
from .errors import TenantError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Tenant:
    uuid: str
    idp: IdpConfig
    created_at: float
    deleted_at: float = None

    @property
    def key(self):
        return self.idp.key

    @property
    def deleted(self):
        return self.deleted_at is not None


class TenantRepository(ABC):
    @abstractmethod
    def all(self, with_deleted=False):
        """Return tenants ordered by key."""

    @abstractmethod
    def find(self, key, with_deleted=False):
        """Return the tenant stored under *key*, or None."""

    def find_by_hint(self, hint):
        """Match *hint* against tenant keys first, then aliases."""
        if not hint:
            return None
        tenant = self.find(hint)
        if tenant is not None:
            return tenant
        for candidate in self.all():
            if hint in candidate.idp.aliases:
                return candidate
        return None

    def create(self, idp):
        raise TenantError("This tenant repository is read-only")

    def delete(self, key, force=False):
        raise TenantError("This tenant repository is read-only")

    def restore(self, key):
        raise TenantError("This tenant repository is read-only")


class StaticTenantRepository(TenantRepository):
    def __init__(self, idps):
        now = time.time()
        self._tenants = {}
        for idp in idps:
            self._tenants[idp.key] = Tenant(uuid=str(uuid.uuid5(uuid.NAMESPACE_URL, idp.entity_id)),
                                            idp=idp, created_at=now)

    def all(self, with_deleted=False):
        return [self._tenants[k] for k in sorted(self._tenants)]

    def find(self, key, with_deleted=False):
        return self._tenants.get(key)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS saml2_tenants (
    uuid TEXT PRIMARY KEY,
    key TEXT NOT NULL UNIQUE,
    config TEXT NOT NULL,
    created_at REAL NOT NULL,
    deleted_at REAL DEFAULT NULL
)
"""


class SqliteTenantRepository(TenantRepository):
    """Tenants kept in SQLite; deletes are soft unless forced."""

    def __init__(self, db_path):
        self._db_path = db_path
        parent = os.path.dirname(db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._write_lock = threading.Lock()
        self._conn.execute(_SCHEMA)
        self._conn.commit()

    def close(self):
        self._conn.close()

    def _row_to_tenant(self, row):
        data = json.loads(row["config"])
        data["aliases"] = tuple(data.get("aliases") or ())
        return Tenant(
            uuid=row["uuid"],
            idp=IdpConfig(**data),
            created_at=row["created_at"],
            deleted_at=row["deleted_at"],
        )

    def all(self, with_deleted=False):
        sql = "SELECT * FROM saml2_tenants"
        if not with_deleted:
            sql += " WHERE deleted_at IS NULL"
        rows = self._conn.execute(sql + " ORDER BY key").fetchall()
        return [self._row_to_tenant(row) for row in rows]

    def find(self, key, with_deleted=False):
        sql = "SELECT * FROM saml2_tenants WHERE key = ?"
        if not with_deleted:
            sql += " AND deleted_at IS NULL"
        row = self._conn.execute(sql, (key,)).fetchone()
        return self._row_to_tenant(row) if row else None

    def create(self, idp):
        tenant = Tenant(uuid=str(uuid.uuid4()), idp=idp, created_at=time.time())
        with self._write_lock:
            try:
                self._conn.execute(
                    "INSERT INTO saml2_tenants (uuid, key, config, created_at) VALUES (?, ?, ?, ?)",
                    (tenant.uuid, idp.key, json.dumps(asdict(idp)), tenant.created_at),
                )
                self._conn.commit()
            except sqlite3.IntegrityError as e:
                raise TenantError(f"Tenant '{idp.key}' already exists", idp_key=idp.key) from e
        logger.info(f"created tenant {idp.key} ({tenant.uuid})")
        return tenant

    def delete(self, key, force=False):
        with self._write_lock:
            if force:
                cur = self._conn.execute("DELETE FROM saml2_tenants WHERE key = ?", (key,))
            else:
                cur = self._conn.execute(
                    "UPDATE saml2_tenants SET deleted_at = ? WHERE key = ? AND deleted_at IS NULL",
                    (time.time(), key),
                )
            self._conn.commit()
        if cur.rowcount == 0:
            raise TenantError(f"Tenant '{key}' not found", idp_key=key)
        logger.info(f"{'removed' if force else 'deleted'} tenant {key}")

    def restore(self, key):
        with self._write_lock:
            cur = self._conn.execute(
                "UPDATE saml2_tenants SET deleted_at = NULL WHERE key = ? AND deleted_at IS NOT NULL",
                (key,),
            )
            self._conn.commit()
        if cur.rowcount == 0:
            raise TenantError(f"No deleted tenant '{key}'", idp_key=key)
        logger.info(f"restored tenant {key}")
