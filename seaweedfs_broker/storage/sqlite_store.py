"""SQLite implementation of broker state storage."""

import sqlite3
import json
import logging
import threading
from typing import List, Optional
from datetime import datetime
from pathlib import Path

from seaweedfs_broker.exceptions import StoreError
from seaweedfs_broker.models.instance import (
    ServiceInstance, ServiceBinding, PendingOperation, InstanceState,
    OperationType, OperationStatus, utcnow
)
from seaweedfs_broker.storage.base import StateStore

logger = logging.getLogger(__name__)


class SQLiteStateStore(StateStore):
    """SQLite implementation of broker state storage."""

    def __init__(self, db_path: str):
        """Initialize SQLite store."""
        self.db_path = db_path
        self.connection: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    async def initialize(self) -> None:
        """Initialize the SQLite database."""
        with self._lock:
            try:
                if self.db_path != ':memory:':
                    Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

                self.connection = sqlite3.connect(self.db_path, check_same_thread=False)
                self.connection.row_factory = sqlite3.Row
                self._create_tables()

            except (OSError, sqlite3.Error) as e:
                logger.error(f"Failed to initialize SQLite store: {e}")
                raise StoreError(f"Failed to initialize SQLite store at {self.db_path}", cause=e)

            logger.info(f"SQLite state store initialized at {self.db_path}")

    def _create_tables(self) -> None:
        """Create database tables."""
        cursor = self.connection.cursor()

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS service_instances (
                instance_id TEXT PRIMARY KEY,
                service_id TEXT NOT NULL,
                plan_id TEXT NOT NULL,
                organization_guid TEXT NOT NULL,
                space_guid TEXT NOT NULL,
                parameters TEXT NOT NULL,
                context TEXT NOT NULL,
                backing TEXT NOT NULL,
                state TEXT NOT NULL,
                state_message TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS service_bindings (
                binding_id TEXT PRIMARY KEY,
                instance_id TEXT NOT NULL,
                app_guid TEXT NOT NULL,
                parameters TEXT NOT NULL,
                access_key TEXT NOT NULL,
                secret_key TEXT NOT NULL,
                iam_user_name TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS pending_operations (
                instance_id TEXT PRIMARY KEY,
                operation TEXT NOT NULL,
                plan_id TEXT NOT NULL,
                owner TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        ''')

        cursor.execute('CREATE INDEX IF NOT EXISTS idx_bindings_instance ON service_bindings (instance_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_bindings_iam_user ON service_bindings (iam_user_name)')

        self.connection.commit()

    def _execute(self, query: str, params: tuple = ()) -> sqlite3.Cursor:
        if self.connection is None:
            raise StoreError("SQLite store is not initialized")
        try:
            cursor = self.connection.execute(query, params)
            self.connection.commit()
            return cursor
        except sqlite3.Error as e:
            self.connection.rollback()
            logger.error(f"SQLite statement failed: {e}")
            raise StoreError("State store operation failed", cause=e)

    async def get_instance(self, instance_id: str) -> Optional[ServiceInstance]:
        """Retrieve service instance by ID."""
        with self._lock:
            row = self._execute(
                'SELECT * FROM service_instances WHERE instance_id = ?', (instance_id,)
            ).fetchone()
            return self._row_to_instance(row) if row else None

    async def save_instance(self, instance: ServiceInstance) -> None:
        """Insert or replace an instance."""
        with self._lock:
            instance.updated_at = utcnow()
            self._execute('''
                INSERT OR REPLACE INTO service_instances (
                    instance_id, service_id, plan_id, organization_guid, space_guid,
                    parameters, context, backing, state, state_message, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                instance.instance_id,
                instance.service_id,
                instance.plan_id,
                instance.organization_guid,
                instance.space_guid,
                json.dumps(instance.parameters),
                json.dumps(instance.context),
                json.dumps(instance.backing.model_dump(mode='json')),
                instance.state.value,
                instance.state_message,
                instance.created_at.isoformat(),
                instance.updated_at.isoformat()
            ))
            logger.debug(f"Saved instance {instance.instance_id} ({instance.state.value})")

    async def delete_instance(self, instance_id: str) -> None:
        """Delete service instance record."""
        with self._lock:
            self._execute('DELETE FROM service_instances WHERE instance_id = ?', (instance_id,))

    async def list_instances(self) -> List[ServiceInstance]:
        """List all service instances, oldest first."""
        with self._lock:
            rows = self._execute('SELECT * FROM service_instances ORDER BY created_at').fetchall()
            return [self._row_to_instance(row) for row in rows]

    async def get_binding(self, binding_id: str) -> Optional[ServiceBinding]:
        with self._lock:
            row = self._execute(
                'SELECT * FROM service_bindings WHERE binding_id = ?', (binding_id,)
            ).fetchone()
            return self._row_to_binding(row) if row else None

    async def save_binding(self, binding: ServiceBinding) -> None:
        with self._lock:
            self._execute('''
                INSERT OR REPLACE INTO service_bindings (
                    binding_id, instance_id, app_guid, parameters,
                    access_key, secret_key, iam_user_name, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                binding.binding_id,
                binding.instance_id,
                binding.app_guid,
                json.dumps(binding.parameters),
                binding.access_key,
                binding.secret_key,
                binding.iam_user_name,
                binding.created_at.isoformat()
            ))

    async def delete_binding(self, binding_id: str) -> None:
        with self._lock:
            self._execute('DELETE FROM service_bindings WHERE binding_id = ?', (binding_id,))

    async def list_bindings_for_instance(self, instance_id: str) -> List[ServiceBinding]:
        with self._lock:
            rows = self._execute(
                'SELECT * FROM service_bindings WHERE instance_id = ? ORDER BY created_at',
                (instance_id,)
            ).fetchall()
            return [self._row_to_binding(row) for row in rows]

    async def find_binding_by_iam_user(self, user_name: str) -> Optional[ServiceBinding]:
        with self._lock:
            row = self._execute(
                'SELECT * FROM service_bindings WHERE iam_user_name = ?', (user_name,)
            ).fetchone()
            return self._row_to_binding(row) if row else None

    async def save_operation(self, operation: PendingOperation) -> None:
        with self._lock:
            self._execute('''
                INSERT OR REPLACE INTO pending_operations (
                    instance_id, operation, plan_id, owner, status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
            ''', (
                operation.instance_id,
                operation.operation.value,
                operation.plan_id,
                operation.owner,
                operation.status.value,
                operation.created_at.isoformat()
            ))

    async def get_operation(self, instance_id: str) -> Optional[PendingOperation]:
        with self._lock:
            row = self._execute(
                'SELECT * FROM pending_operations WHERE instance_id = ?', (instance_id,)
            ).fetchone()
            return self._row_to_operation(row) if row else None

    async def delete_operation(self, instance_id: str) -> None:
        with self._lock:
            self._execute('DELETE FROM pending_operations WHERE instance_id = ?', (instance_id,))

    async def list_operations(self) -> List[PendingOperation]:
        with self._lock:
            rows = self._execute('SELECT * FROM pending_operations ORDER BY created_at').fetchall()
            return [self._row_to_operation(row) for row in rows]

    async def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self.connection:
                self.connection.close()
                self.connection = None
                logger.info("SQLite connection closed")

    def _row_to_instance(self, row: sqlite3.Row) -> ServiceInstance:
        """Convert database row to ServiceInstance."""
        return ServiceInstance(
            instance_id=row['instance_id'],
            service_id=row['service_id'],
            plan_id=row['plan_id'],
            organization_guid=row['organization_guid'],
            space_guid=row['space_guid'],
            parameters=json.loads(row['parameters']),
            context=json.loads(row['context']),
            backing=json.loads(row['backing']),
            state=InstanceState(row['state']),
            state_message=row['state_message'],
            created_at=datetime.fromisoformat(row['created_at']),
            updated_at=datetime.fromisoformat(row['updated_at'])
        )

    def _row_to_binding(self, row: sqlite3.Row) -> ServiceBinding:
        return ServiceBinding(
            binding_id=row['binding_id'],
            instance_id=row['instance_id'],
            app_guid=row['app_guid'],
            parameters=json.loads(row['parameters']),
            access_key=row['access_key'],
            secret_key=row['secret_key'],
            iam_user_name=row['iam_user_name'],
            created_at=datetime.fromisoformat(row['created_at'])
        )

    def _row_to_operation(self, row: sqlite3.Row) -> PendingOperation:
        return PendingOperation(
            instance_id=row['instance_id'],
            operation=OperationType(row['operation']),
            plan_id=row['plan_id'],
            owner=row['owner'],
            status=OperationStatus(row['status']),
            created_at=datetime.fromisoformat(row['created_at'])
        )
