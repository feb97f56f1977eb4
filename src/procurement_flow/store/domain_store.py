"""
Domain Store - business records behind a generic DAO

Suppliers, requests, quotations and the identity directory are stored as
JSON documents in one SQLite table keyed by (object_type, persistence_id).
A single BusinessObjectDAO serves every record type: instantiated with a
pydantic model it returns typed records, instantiated without one it
returns plain dicts (the untyped form of the same DAO).

Fun fact: Document stores predate relational databases - IBM's IMS, built
in 1966 to track parts for the Apollo program, stored hierarchical records
much like these JSON rows!
"""

import json
import sqlite3
import threading
from collections.abc import Iterable
from contextlib import contextmanager
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Any, Generic, Iterator, TypeVar

from pydantic import BaseModel

from procurement_flow.kernel.errors import SupplierNotFound
from procurement_flow.kernel.journal import current_transaction
from procurement_flow.kernel.logging import get_logger
from procurement_flow.kernel.retry import retry_on_sqlite_lock
from procurement_flow.procurement.models import (
    Quotation,
    Request,
    Supplier,
    SupplierAccountManager,
    User,
)

logger = get_logger(__name__)

T = TypeVar("T")

# Key prefix of documents staged on a journal transaction
_STAGED = "business_objects"


class SQLiteDocumentTable:
    """
    Raw storage for JSON business documents

    Schema:
    - business_objects(object_type, persistence_id, data_json)
    - persistence ids are assigned per object type, starting at 1

    Inside a journal transaction, writes are staged on the transaction and
    land in the same SQLite commit as the call's events; reads made within
    that transaction see the staged documents.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self._id_lock = threading.Lock()
        # Highest id handed out per type, including ids of staged documents
        self._last_ids: dict[str, int] = {}
        self._initialize_schema()

    def _initialize_schema(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS business_objects (
                    object_type TEXT NOT NULL,
                    persistence_id INTEGER NOT NULL,
                    data_json TEXT NOT NULL,

                    PRIMARY KEY (object_type, persistence_id)
                )
            """)
            conn.commit()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), timeout=5.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _allocate_id(self, object_type: str) -> int:
        with self._id_lock, self._connect() as conn:
            stored = conn.execute(
                "SELECT MAX(persistence_id) FROM business_objects WHERE object_type = ?",
                (object_type,),
            ).fetchone()[0]
            persistence_id = max(stored or 0, self._last_ids.get(object_type, 0)) + 1
            self._last_ids[object_type] = persistence_id
            return persistence_id

    @staticmethod
    def _write(
        conn: sqlite3.Connection, object_type: str, persistence_id: int, data: dict[str, Any]
    ) -> None:
        conn.execute(
            """
            INSERT INTO business_objects (object_type, persistence_id, data_json)
            VALUES (?, ?, ?)
            ON CONFLICT(object_type, persistence_id) DO UPDATE SET
                data_json = excluded.data_json
            """,
            (object_type, persistence_id, json.dumps(data)),
        )

    def upsert(self, object_type: str, persistence_id: int | None, data: dict[str, Any]) -> int:
        """
        Insert or replace a document; returns its persistence id

        A new id is assigned when persistence_id is None. Within a journal
        transaction the write is staged until the transaction commits.
        """
        if persistence_id is None:
            persistence_id = self._allocate_id(object_type)

        tx = current_transaction()
        if tx is not None:
            tx.stage(
                (_STAGED, object_type, persistence_id),
                {**data, "persistence_id": persistence_id},
                partial(
                    self._write,
                    object_type=object_type,
                    persistence_id=persistence_id,
                    data=data,
                ),
            )
        else:
            self._write_now(object_type, persistence_id, data)
        return persistence_id

    @retry_on_sqlite_lock()
    def _write_now(self, object_type: str, persistence_id: int, data: dict[str, Any]) -> None:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            self._write(conn, object_type, persistence_id, data)
            conn.commit()

    def load(self, object_type: str, persistence_id: int) -> dict[str, Any] | None:
        tx = current_transaction()
        if tx is not None:
            staged = tx.staged_value((_STAGED, object_type, persistence_id))
            if staged is not None:
                return dict(staged)

        with self._connect() as conn:
            row = conn.execute(
                "SELECT persistence_id, data_json FROM business_objects "
                "WHERE object_type = ? AND persistence_id = ?",
                (object_type, persistence_id),
            ).fetchone()
        return self._row_to_document(row) if row else None

    def load_range(
        self, object_type: str, start: int = 0, count: int | None = None
    ) -> list[dict[str, Any]]:
        """Documents of one type in persistence id order, paged"""
        staged = self._staged_documents(object_type)
        if staged:
            documents = {doc["persistence_id"]: doc for doc in self._load_all(object_type)}
            documents.update(staged)
            ordered = [documents[key] for key in sorted(documents)]
            return ordered[start:] if count is None else ordered[start:start + count]

        with self._connect() as conn:
            cursor = conn.execute(
                "SELECT persistence_id, data_json FROM business_objects "
                "WHERE object_type = ? ORDER BY persistence_id ASC LIMIT ? OFFSET ?",
                (object_type, -1 if count is None else count, start),
            )
            return [self._row_to_document(row) for row in cursor.fetchall()]

    def count(self, object_type: str) -> int:
        if self._staged_documents(object_type):
            return len(self.load_range(object_type))
        with self._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM business_objects WHERE object_type = ?",
                (object_type,),
            ).fetchone()[0]

    def _load_all(self, object_type: str) -> list[dict[str, Any]]:
        with self._connect() as conn:
            cursor = conn.execute(
                "SELECT persistence_id, data_json FROM business_objects "
                "WHERE object_type = ?",
                (object_type,),
            )
            return [self._row_to_document(row) for row in cursor.fetchall()]

    def _staged_documents(self, object_type: str) -> dict[int, dict[str, Any]]:
        tx = current_transaction()
        if tx is None:
            return {}
        return {
            key[2]: dict(staged.value)
            for key, staged in tx.staged.items()
            if key[0] == _STAGED and key[1] == object_type
        }

    def _row_to_document(self, row: sqlite3.Row) -> dict[str, Any]:
        document = json.loads(row["data_json"])
        document["persistence_id"] = row["persistence_id"]
        return document


class BusinessObjectDAO(Generic[T]):
    """
    Generic data access object over one business object type

    Usage:
        suppliers = BusinessObjectDAO(table, "Supplier", Supplier)
        acme = suppliers.query_single(name="Acme Inc.")

        raw = BusinessObjectDAO[dict](table, "Supplier")
        raw.find(0, 10)  # -> list of dicts
    """

    def __init__(
        self,
        table: SQLiteDocumentTable,
        object_type: str,
        model: type[BaseModel] | None = None,
    ) -> None:
        self._table = table
        self.object_type = object_type
        self.model = model

    def _to_record(self, document: dict[str, Any]) -> T:
        if self.model is None:
            return document  # type: ignore[return-value]
        return self.model.model_validate(document)  # type: ignore[return-value]

    def _to_document(self, record: T) -> tuple[int | None, dict[str, Any]]:
        if isinstance(record, BaseModel):
            data = record.model_dump(mode="json")
        else:
            data = dict(record)  # type: ignore[call-overload]
        persistence_id = data.pop("persistence_id", None)
        return persistence_id, data

    def find(self, start: int = 0, count: int = 100) -> list[T]:
        return [
            self._to_record(doc)
            for doc in self._table.load_range(self.object_type, start, count)
        ]

    def get(self, persistence_id: int) -> T | None:
        document = self._table.load(self.object_type, persistence_id)
        return self._to_record(document) if document is not None else None

    def query(self, **criteria: Any) -> list[T]:
        """
        Records whose fields equal every criterion

        Enum criteria compare by their value.
        """
        wanted = {
            key: value.value if isinstance(value, Enum) else value
            for key, value in criteria.items()
        }
        return [
            self._to_record(doc)
            for doc in self._table.load_range(self.object_type)
            if all(doc.get(key) == value for key, value in wanted.items())
        ]

    def query_single(self, **criteria: Any) -> T | None:
        """
        The only record matching the criteria, or None

        Raises:
            ValueError: If more than one record matches
        """
        matches = self.query(**criteria)
        if len(matches) > 1:
            raise ValueError(
                f"{len(matches)} {self.object_type} records match {criteria}, expected one"
            )
        return matches[0] if matches else None

    def persist(self, record: T) -> T:
        """Insert or update a record; returns it with its persistence id set"""
        persistence_id, data = self._to_document(record)
        persistence_id = self._table.upsert(self.object_type, persistence_id, data)
        logger.debug(
            "Business object persisted",
            object_type=self.object_type,
            persistence_id=persistence_id,
        )
        if isinstance(record, BaseModel):
            return record.model_copy(update={"persistence_id": persistence_id})  # type: ignore[return-value]
        return {**data, "persistence_id": persistence_id}  # type: ignore[return-value]

    def count(self) -> int:
        return self._table.count(self.object_type)


class SQLiteDomainStore:
    """
    Domain store for procurement records

    The workflow only reaches business data through the operations below.
    """

    _MODELS: dict[type[BaseModel], str] = {
        Supplier: "Supplier",
        Request: "ProcurementRequest",
        Quotation: "Quotation",
        SupplierAccountManager: "SupplierAccountManager",
        User: "User",
    }

    def __init__(self, db_path: str | Path) -> None:
        self.table = SQLiteDocumentTable(db_path)
        self.suppliers: BusinessObjectDAO[Supplier] = self.dao(Supplier)
        self.requests: BusinessObjectDAO[Request] = self.dao(Request)
        self.quotations: BusinessObjectDAO[Quotation] = self.dao(Quotation)
        self.account_managers: BusinessObjectDAO[SupplierAccountManager] = self.dao(
            SupplierAccountManager
        )
        self.users: BusinessObjectDAO[User] = self.dao(User)

    def dao(self, model: type[BaseModel]) -> BusinessObjectDAO[Any]:
        return BusinessObjectDAO(self.table, self._MODELS[model], model)

    def untyped_dao(self, model: type[BaseModel]) -> BusinessObjectDAO[dict[str, Any]]:
        """The same DAO without a record type - documents come back as dicts"""
        return BusinessObjectDAO(self.table, self._MODELS[model])

    def persist(self, record: BaseModel) -> Any:
        """Persist any known record type through its DAO"""
        model = type(record)
        if model not in self._MODELS:
            raise TypeError(f"No DAO for {model.__name__}")
        return self.dao(model).persist(record)

    # ========================================================================
    # Suppliers
    # ========================================================================

    def find_supplier_by_name(self, name: str) -> Supplier | None:
        return self.suppliers.query_single(name=name)

    def find_suppliers_by_ids(self, supplier_ids: Iterable[int]) -> list[Supplier]:
        """
        Suppliers in the order of the given ids

        Raises:
            SupplierNotFound: If any id does not resolve
        """
        found = []
        for supplier_id in supplier_ids:
            supplier = self.suppliers.get(supplier_id)
            if supplier is None:
                raise SupplierNotFound(str(supplier_id))
            found.append(supplier)
        return found

    # ========================================================================
    # Requests & quotations
    # ========================================================================

    def get_request(self, request_id: int) -> Request | None:
        return self.requests.get(request_id)

    def find_request_by_case(self, case_id: int) -> Request | None:
        return self.requests.query_single(case_id=case_id)

    def query_quotations(self, request_id: int) -> list[Quotation]:
        return self.quotations.query(request_id=request_id)

    def get_quotation(self, quotation_id: int) -> Quotation | None:
        return self.quotations.get(quotation_id)

    # ========================================================================
    # Identity directory
    # ========================================================================

    def candidates_for_supplier(self, supplier_id: int) -> set[str]:
        return {m.username for m in self.account_managers.query(supplier_id=supplier_id)}

    def find_user(self, username: str) -> User | None:
        return self.users.query_single(username=username)
