from __future__ import annotations


class CertificateError(ValueError):
    """The PKCS#12 credential could not be used (password, bags, expiry)."""


class XmlSignatureError(ValueError):
    """The NF-e XML could not be signed (missing infNFe Id anchor, signer failure)."""


class StorageError(RuntimeError):
    """The storage collaborator failed to read or write a record."""


class InvoiceStateError(StorageError):
    """A guarded invoice update was refused because of the invoice status."""

    def __init__(self, message: str, status: str | None = None) -> None:
        super().__init__(message)
        self.status = status
