"""Storage collaborator consumed by the emission services.

The core never picks a persistence engine: anything implementing
:class:`Storage` can be injected. Every method is scoped by user id where the
record belongs to a tenant, and the multi-record operations
(``create_invoice``, ``replace_invoice``, ``replace_invoice_items``,
``replace_certificate``) must be atomic with respect to concurrent callers.
"""

from __future__ import annotations

from collections.abc import Collection, Sequence
from typing import Any, Protocol

from emissor_nfe.models.certificate import Certificate, User
from emissor_nfe.models.emitter import Emitter
from emissor_nfe.models.invoice import Invoice, InvoiceItem


class Storage(Protocol):
    # --- users ---

    def get_user(self, user_id: int) -> User | None: ...

    def get_user_by_username(self, username: str) -> User | None: ...

    def create_user(self, user: User) -> User: ...

    # --- emitter (exactly one per user) ---

    def get_emitter(self, user_id: int) -> Emitter | None: ...

    def save_emitter(self, user_id: int, emitter: Emitter) -> Emitter: ...

    # --- certificates ---

    def list_certificates(self, user_id: int) -> list[Certificate]: ...

    def get_active_certificate(self, user_id: int) -> Certificate | None: ...

    def replace_certificate(self, user_id: int, certificate: Certificate) -> Certificate:
        """Atomically drop the user's previous certificate and store *certificate* as active."""
        ...

    def delete_certificate(self, user_id: int, certificate_id: int) -> bool: ...

    # --- invoices ---

    def list_invoices(self, user_id: int) -> list[Invoice]: ...

    def get_invoice(self, user_id: int, invoice_id: int) -> Invoice | None: ...

    def create_invoice(
        self, user_id: int, invoice: Invoice, items: Sequence[InvoiceItem]
    ) -> Invoice:
        """Insert header and items together, assigning the next 6-digit numero."""
        ...

    def update_invoice(
        self,
        user_id: int,
        invoice_id: int,
        *,
        expected_statuses: Collection[str] | None = None,
        **changes: Any,
    ) -> Invoice:
        """Atomic partial update. Raises InvoiceStateError when the guard fails."""
        ...

    def replace_invoice(
        self,
        user_id: int,
        invoice_id: int,
        invoice: Invoice,
        items: Sequence[InvoiceItem],
        allowed_statuses: Collection[str],
    ) -> Invoice:
        """Replace header + items in one transaction, guarded by status."""
        ...

    def delete_invoice(self, user_id: int, invoice_id: int) -> bool: ...

    # --- items ---

    def get_invoice_items(self, invoice_id: int) -> list[InvoiceItem]: ...

    def replace_invoice_items(
        self, invoice_id: int, items: Sequence[InvoiceItem]
    ) -> list[InvoiceItem]:
        """Delete-then-insert the item batch of one invoice atomically."""
        ...
