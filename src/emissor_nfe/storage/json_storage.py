"""File-backed storage: one JSON document guarded by an exclusive file lock.

Every read-modify-write runs under the same ``FileLock``, which makes the
multi-record operations (invoice + items, certificate replacement) atomic
across threads and processes sharing the data directory.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Collection, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from filelock import FileLock

from emissor_nfe import config as _config
from emissor_nfe.models.certificate import Certificate, User
from emissor_nfe.models.emitter import Emitter
from emissor_nfe.models.invoice import (
    ARTIFACT_FIELDS,
    STATUS_DRAFT,
    Invoice,
    InvoiceItem,
)
from emissor_nfe.services.exceptions import InvoiceStateError, StorageError

logger = logging.getLogger(__name__)

_TABLES = ("users", "emitters", "certificates", "invoices", "invoice_items")

# Fields callers may not overwrite through update_invoice
_PROTECTED_FIELDS = frozenset({"id", "user_id", "numero", "created_at"})


def _empty() -> dict[str, Any]:
    data: dict[str, Any] = {table: [] for table in _TABLES}
    data["sequences"] = {"ids": {}, "numero": {}}
    return data


def _backup_corrupt(path: Path) -> Path:
    """Rename a corrupt file to a timestamped backup before it gets overwritten."""
    ts = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
    backup = path.with_name(f"{path.name}.corrupt.{ts}")
    path.rename(backup)
    logger.warning("Corrupt file backed up: %s → %s", path, backup)
    return backup


class JsonStorage:
    """Storage implementation persisting every entity in a single JSON file."""

    def __init__(self, path: Path | str | None = None) -> None:
        self.path = Path(path) if path is not None else _config.get_storage_path()

    # --- low level ---

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(self.path.with_suffix(".lock"))
        with lock:
            yield

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return _empty()
        try:
            data = json.loads(self.path.read_text())
        except (json.JSONDecodeError, ValueError):
            _backup_corrupt(self.path)
            return _empty()
        for key, value in _empty().items():
            data.setdefault(key, value)
        return data

    def _save(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False) + "\n")
        os.replace(tmp, self.path)

    @contextmanager
    def _transaction(self) -> Iterator[dict[str, Any]]:
        """Yield the loaded document and persist it if the block succeeds."""
        with self._locked():
            data = self._load()
            yield data
            self._save(data)

    def _read(self) -> dict[str, Any]:
        with self._locked():
            return self._load()

    @staticmethod
    def _next_id(data: dict[str, Any], table: str) -> int:
        ids = data["sequences"]["ids"]
        ids[table] = ids.get(table, 0) + 1
        return ids[table]

    @staticmethod
    def _find(rows: list[dict[str, Any]], **match: Any) -> dict[str, Any] | None:
        return next(
            (r for r in rows if all(r.get(k) == v for k, v in match.items())),
            None,
        )

    def _insert_items(
        self, data: dict[str, Any], invoice_id: int, items: Sequence[InvoiceItem]
    ) -> list[InvoiceItem]:
        created = []
        for item in items:
            row = replace(item, id=self._next_id(data, "invoice_items"), invoice_id=invoice_id)
            data["invoice_items"].append(row.to_dict())
            created.append(row)
        return created

    # --- users ---

    def get_user(self, user_id: int) -> User | None:
        row = self._find(self._read()["users"], id=user_id)
        return User.from_dict(row) if row else None

    def get_user_by_username(self, username: str) -> User | None:
        row = self._find(self._read()["users"], username=username)
        return User.from_dict(row) if row else None

    def create_user(self, user: User) -> User:
        with self._transaction() as data:
            if self._find(data["users"], username=user.username):
                raise StorageError(f"Usuario ja existe: {user.username}")
            created = replace(user, id=user.id or self._next_id(data, "users"))
            data["users"].append(created.to_dict())
        return created

    # --- emitter ---

    def get_emitter(self, user_id: int) -> Emitter | None:
        row = self._find(self._read()["emitters"], user_id=user_id)
        return Emitter.from_dict(row) if row else None

    def save_emitter(self, user_id: int, emitter: Emitter) -> Emitter:
        """Insert or overwrite the single emitter of *user_id*."""
        with self._transaction() as data:
            existing = self._find(data["emitters"], user_id=user_id)
            if existing is not None:
                saved = replace(emitter, id=existing["id"], user_id=user_id)
                data["emitters"] = [r for r in data["emitters"] if r.get("user_id") != user_id]
            else:
                saved = replace(emitter, id=self._next_id(data, "emitters"), user_id=user_id)
            data["emitters"].append(saved.to_dict())
        return saved

    # --- certificates ---

    def list_certificates(self, user_id: int) -> list[Certificate]:
        rows = self._read()["certificates"]
        return [Certificate.from_dict(r) for r in rows if r.get("user_id") == user_id]

    def get_active_certificate(self, user_id: int) -> Certificate | None:
        row = self._find(self._read()["certificates"], user_id=user_id, active=True)
        return Certificate.from_dict(row) if row else None

    def replace_certificate(self, user_id: int, certificate: Certificate) -> Certificate:
        with self._transaction() as data:
            previous = [r for r in data["certificates"] if r.get("user_id") == user_id]
            data["certificates"] = [r for r in data["certificates"] if r.get("user_id") != user_id]
            saved = replace(
                certificate,
                id=self._next_id(data, "certificates"),
                user_id=user_id,
                active=True,
            )
            data["certificates"].append(saved.to_dict())
        if previous:
            logger.info("Replaced %d certificate(s) for user %s", len(previous), user_id)
        return saved

    def delete_certificate(self, user_id: int, certificate_id: int) -> bool:
        with self._transaction() as data:
            before = len(data["certificates"])
            data["certificates"] = [
                r
                for r in data["certificates"]
                if not (r.get("user_id") == user_id and r.get("id") == certificate_id)
            ]
            return len(data["certificates"]) != before

    # --- invoices ---

    def list_invoices(self, user_id: int) -> list[Invoice]:
        rows = self._read()["invoices"]
        invoices = [Invoice.from_dict(r) for r in rows if r.get("user_id") == user_id]
        return sorted(invoices, key=lambda i: i.id or 0)

    def get_invoice(self, user_id: int, invoice_id: int) -> Invoice | None:
        row = self._find(self._read()["invoices"], id=invoice_id, user_id=user_id)
        return Invoice.from_dict(row) if row else None

    def create_invoice(
        self, user_id: int, invoice: Invoice, items: Sequence[InvoiceItem]
    ) -> Invoice:
        with self._transaction() as data:
            numeros = data["sequences"]["numero"]
            key = str(user_id)
            numeros[key] = numeros.get(key, 0) + 1
            created = replace(
                invoice,
                id=self._next_id(data, "invoices"),
                user_id=user_id,
                numero=str(numeros[key]).zfill(6),
                status=STATUS_DRAFT,
                created_at=datetime.now(UTC).isoformat(),
            )
            data["invoices"].append(created.to_dict())
            self._insert_items(data, created.id, items)  # type: ignore[arg-type]
        return created

    def update_invoice(
        self,
        user_id: int,
        invoice_id: int,
        *,
        expected_statuses: Collection[str] | None = None,
        **changes: Any,
    ) -> Invoice:
        unknown = set(changes) - set(Invoice.__dataclass_fields__)
        if unknown or set(changes) & _PROTECTED_FIELDS:
            raise StorageError(f"Campos invalidos para atualizacao: {sorted(changes)}")
        with self._transaction() as data:
            row = self._find(data["invoices"], id=invoice_id, user_id=user_id)
            if row is None:
                raise StorageError(f"Nota fiscal nao encontrada: {invoice_id}")
            if expected_statuses is not None and row.get("status") not in expected_statuses:
                raise InvoiceStateError(
                    f"Nota fiscal {invoice_id} em status '{row.get('status')}'",
                    status=row.get("status"),
                )
            row.update(changes)
            updated = Invoice.from_dict(row)
        return updated

    def replace_invoice(
        self,
        user_id: int,
        invoice_id: int,
        invoice: Invoice,
        items: Sequence[InvoiceItem],
        allowed_statuses: Collection[str],
    ) -> Invoice:
        with self._transaction() as data:
            row = self._find(data["invoices"], id=invoice_id, user_id=user_id)
            if row is None:
                raise StorageError(f"Nota fiscal nao encontrada: {invoice_id}")
            if row.get("status") not in allowed_statuses:
                raise InvoiceStateError(
                    f"Nota fiscal {invoice_id} nao pode ser editada no status '{row.get('status')}'",
                    status=row.get("status"),
                )
            replaced = replace(
                invoice,
                id=invoice_id,
                user_id=user_id,
                numero=row.get("numero"),
                created_at=row.get("created_at"),
                status=STATUS_DRAFT,
                **{f: None for f in ARTIFACT_FIELDS},
            )
            row.clear()
            row.update(replaced.to_dict())
            data["invoice_items"] = [
                r for r in data["invoice_items"] if r.get("invoice_id") != invoice_id
            ]
            self._insert_items(data, invoice_id, items)
        return replaced

    def delete_invoice(self, user_id: int, invoice_id: int) -> bool:
        with self._transaction() as data:
            before = len(data["invoices"])
            data["invoices"] = [
                r
                for r in data["invoices"]
                if not (r.get("id") == invoice_id and r.get("user_id") == user_id)
            ]
            deleted = len(data["invoices"]) != before
            if deleted:
                data["invoice_items"] = [
                    r for r in data["invoice_items"] if r.get("invoice_id") != invoice_id
                ]
            return deleted

    # --- items ---

    def get_invoice_items(self, invoice_id: int) -> list[InvoiceItem]:
        rows = self._read()["invoice_items"]
        items = [InvoiceItem.from_dict(r) for r in rows if r.get("invoice_id") == invoice_id]
        return sorted(items, key=lambda i: i.id or 0)

    def replace_invoice_items(
        self, invoice_id: int, items: Sequence[InvoiceItem]
    ) -> list[InvoiceItem]:
        with self._transaction() as data:
            if self._find(data["invoices"], id=invoice_id) is None:
                raise StorageError(f"Nota fiscal nao encontrada: {invoice_id}")
            data["invoice_items"] = [
                r for r in data["invoice_items"] if r.get("invoice_id") != invoice_id
            ]
            return self._insert_items(data, invoice_id, items)
