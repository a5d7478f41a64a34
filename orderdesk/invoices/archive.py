from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from hashlib import sha256
from pathlib import Path

from minio import Minio
from minio.error import S3Error
from sqlalchemy import select
from sqlalchemy.orm import Session

from orderdesk.core.config import get_settings
from orderdesk.persistence.models import InvoiceArchiveModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArchivedInvoice:
    object_key: str
    pdf_hash: str
    stored_at: datetime
    backend: str


class InvoiceArchive:
    backend = "none"

    def put_pdf(self, object_key: str, data: bytes) -> ArchivedInvoice:  # pragma: no cover - interface
        raise NotImplementedError

    def get_pdf(self, object_key: str) -> bytes | None:  # pragma: no cover - interface
        raise NotImplementedError


class LocalInvoiceArchive(InvoiceArchive):
    backend = "local"

    def __init__(self, root: Path):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def put_pdf(self, object_key: str, data: bytes) -> ArchivedInvoice:
        path = self.root / object_key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return ArchivedInvoice(
            object_key=object_key,
            pdf_hash=sha256(data).hexdigest(),
            stored_at=datetime.now(timezone.utc),
            backend=self.backend,
        )

    def get_pdf(self, object_key: str) -> bytes | None:
        path = self.root / object_key
        if not path.exists():
            return None
        return path.read_bytes()


class MinioInvoiceArchive(InvoiceArchive):
    backend = "minio"

    def __init__(self, endpoint: str, access_key: str, secret_key: str, bucket: str, secure: bool = False):
        self.client = Minio(endpoint, access_key=access_key, secret_key=secret_key, secure=secure)
        self.bucket = bucket
        self._ensure_bucket()

    def _ensure_bucket(self) -> None:
        found = self.client.bucket_exists(self.bucket)
        if not found:
            self.client.make_bucket(self.bucket)

    def put_pdf(self, object_key: str, data: bytes) -> ArchivedInvoice:
        self.client.put_object(
            bucket_name=self.bucket,
            object_name=object_key,
            data=io.BytesIO(data),
            length=len(data),
            content_type="application/pdf",
        )
        return ArchivedInvoice(
            object_key=object_key,
            pdf_hash=sha256(data).hexdigest(),
            stored_at=datetime.now(timezone.utc),
            backend=self.backend,
        )

    def get_pdf(self, object_key: str) -> bytes | None:
        try:
            response = self.client.get_object(self.bucket, object_key)
        except S3Error as exc:
            if exc.code == "NoSuchKey":
                return None
            raise
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()


def build_invoice_archive() -> InvoiceArchive:
    settings = get_settings()
    if settings.invoice_backend == "minio":
        try:
            return MinioInvoiceArchive(
                endpoint=settings.minio_endpoint,
                access_key=settings.minio_access_key,
                secret_key=settings.minio_secret_key,
                bucket=settings.minio_bucket,
                secure=settings.minio_secure,
            )
        except Exception as exc:
            logger.warning("minio invoice archive unavailable, falling back to local: %s", exc)
    return LocalInvoiceArchive(settings.invoices_dir)


def invoice_object_key(order_id: str, invoice_no: str) -> str:
    return f"{order_id}/{invoice_no}.pdf"


def record_archived_invoice(session: Session, batch_id: str, archived: ArchivedInvoice) -> InvoiceArchiveModel:
    record = session.scalar(select(InvoiceArchiveModel).where(InvoiceArchiveModel.batch_id == batch_id))
    if record is None:
        record = InvoiceArchiveModel(
            batch_id=batch_id,
            object_key=archived.object_key,
            pdf_hash=archived.pdf_hash,
            backend=archived.backend,
            stored_at=archived.stored_at,
        )
        session.add(record)
    else:
        record.object_key = archived.object_key
        record.pdf_hash = archived.pdf_hash
        record.backend = archived.backend
        record.stored_at = archived.stored_at
    session.flush()
    return record


def get_archived_invoice(session: Session, batch_id: str) -> InvoiceArchiveModel | None:
    return session.scalar(select(InvoiceArchiveModel).where(InvoiceArchiveModel.batch_id == batch_id))
