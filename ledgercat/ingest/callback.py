"""Signed JSON batches delivered by an external extraction pipeline."""

import dataclasses
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ledgercat.batch import ImportSummary, TransactionStore, ingest_transactions
from ledgercat.db.models import ImportContext, RawRow
from ledgercat.errors import CallbackPayloadError, InvalidSignatureError
from ledgercat.ingest.parser import parse_amount, parse_date

log = logging.getLogger("ledgercat.callback")


@dataclass
class CallbackBatch:
    """Rows of one delivered batch."""

    job_id: str | None
    user_id: str | None
    rows: list[RawRow] = field(default_factory=list)


@dataclass
class JobRecord:
    """Last known status of an extraction job."""

    job_id: str
    status: str
    result: Any = None
    received_at: str | None = None


class JobRegistry:
    """Job status records keyed by job ID."""

    def __init__(self):
        self._jobs: dict[str, JobRecord] = {}

    def upsert(
        self, job_id: str | int, status: str, result: Any = None, received_at: str | None = None
    ) -> JobRecord:
        """Insert or replace the record of a job."""
        record = JobRecord(str(job_id), status, result, received_at)
        self._jobs[record.job_id] = record
        return record

    def get(self, job_id: str | int) -> JobRecord | None:
        """Get the record of a job."""
        return self._jobs.get(str(job_id))

    def __len__(self) -> int:
        return len(self._jobs)


def _as_bytes(value: bytes | str) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def sign(raw_body: bytes | str, secret: str) -> str:
    """Compute the hex HMAC-SHA256 signature of a body."""
    return hmac.new(_as_bytes(secret), _as_bytes(raw_body), hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes | str, signature: str | None, secret: str | None) -> bool:
    """Check a hex HMAC-SHA256 signature against the raw body.

    The comparison is constant time. A missing signature or secret never
    verifies.
    """
    if not signature or not secret:
        return False
    expected = sign(raw_body, secret).encode("ascii")
    return hmac.compare_digest(expected, signature.strip().lower().encode("utf-8"))


def _load_json(raw_body: bytes | str) -> dict:
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise CallbackPayloadError(f"Invalid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise CallbackPayloadError("Payload must be a JSON object")
    return payload


def _to_row(item: Any, index: int) -> RawRow:
    if not isinstance(item, dict):
        raise CallbackPayloadError(f"Transaction {index} is not an object")
    txn_date = parse_date(item.get("date"))
    if txn_date is None:
        raise CallbackPayloadError(f"Transaction {index} has a missing or invalid date")
    amount = item.get("amount")
    if amount is None:
        amount = 0
    if isinstance(amount, bool) or not isinstance(amount, (int, float, str)):
        raise CallbackPayloadError(f"Transaction {index} has an invalid amount")
    return RawRow(
        date=txn_date,
        value_date=parse_date(item.get("value_date")),
        description=str(item.get("description") or ""),
        amount=parse_amount(amount),
    )


def parse_callback_payload(raw_body: bytes | str) -> CallbackBatch:
    """Parse a delivered batch into raw rows.

    Raises:
        CallbackPayloadError: the body is not JSON, carries no transactions,
            or mixes transactions of different users.
    """
    payload = _load_json(raw_body)
    transactions = payload.get("transactions")
    if not isinstance(transactions, list) or not transactions:
        raise CallbackPayloadError("No transactions provided")

    user_id = payload.get("user_id")
    for item in transactions:
        owner = item.get("user_id") if isinstance(item, dict) else None
        if owner is None:
            continue
        if user_id is None:
            user_id = owner
        elif owner != user_id:
            raise CallbackPayloadError("Transactions belong to more than one user")

    job_id = payload.get("jobId", payload.get("job_id"))
    return CallbackBatch(
        job_id=str(job_id) if job_id is not None else None,
        user_id=user_id,
        rows=[_to_row(item, i) for i, item in enumerate(transactions)],
    )


def handle_job_status(
    registry: JobRegistry, raw_body: bytes | str, signature: str | None, secret: str | None
) -> JobRecord:
    """Record a signed job status notification."""
    if not verify_signature(raw_body, signature, secret):
        raise InvalidSignatureError("Invalid signature")
    payload = _load_json(raw_body)
    job_id = payload.get("jobId")
    status = payload.get("status")
    if job_id is None or status is None:
        raise CallbackPayloadError("Missing required fields: jobId, status")
    meta = payload.get("meta") or {}
    received_at = meta.get("receivedAt") if isinstance(meta, dict) else None
    return registry.upsert(job_id, status, payload.get("result"), received_at)


async def ingest_callback(
    store: TransactionStore,
    raw_body: bytes | str,
    signature: str | None,
    secret: str | None,
    context: ImportContext,
    registry: JobRegistry | None = None,
) -> ImportSummary:
    """Verify, parse and ingest a delivered batch.

    Rows go through the same canonicalization and dedup path as statement
    imports. The payload's user, when present, replaces the context user.

    Raises:
        InvalidSignatureError: the body failed verification.
        CallbackPayloadError: the body is malformed.
    """
    if not verify_signature(raw_body, signature, secret):
        raise InvalidSignatureError("Invalid signature")
    batch = parse_callback_payload(raw_body)
    if batch.user_id:
        context = dataclasses.replace(context, user_id=batch.user_id)

    summary = await ingest_transactions(store, batch.rows, context)
    log.info(
        f"Callback job {batch.job_id or '-'}: rows_total={summary.rows_total} "
        f"rows_inserted={summary.rows_inserted} rows_skipped={summary.rows_skipped}"
    )
    if registry is not None and batch.job_id:
        registry.upsert(
            batch.job_id,
            "ingested",
            {"inserted": summary.rows_inserted, "skipped": summary.rows_skipped},
            datetime.now().isoformat(),
        )
    return summary
