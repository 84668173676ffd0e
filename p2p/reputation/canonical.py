"""
Canonical Signable Payloads

Every peer must produce byte-identical payloads for the same verdict or
payment message, otherwise cross-peer signature checks fail. The encoding is
a msgpack array:

    [tag, field_1, field_2, ...]

- tag names the encoding version ("chiral-verdict-v1", "chiral-payment-v1")
- fields appear in the fixed order below; the signature field is never included
- absent optionals encode as nil, evidence blobs as an array of strings
- integral floats encode as integers so 1700000000.0 and 1700000000 agree
"""

from typing import Any, List

import msgpack

from .models import SignedTransactionMessage, TransactionVerdict


VERDICT_ENCODING = "chiral-verdict-v1"
PAYMENT_ENCODING = "chiral-payment-v1"

VERDICT_FIELDS = (
    "target_id",
    "tx_hash",
    "outcome",
    "details",
    "metric",
    "issued_at",
    "issuer_id",
    "issuer_seq_no",
    "tx_receipt",
    "evidence_blobs",
)

PAYMENT_FIELDS = ("from", "to", "amount", "file_hash", "nonce", "deadline")


def _normalize_number(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def verdict_payload(verdict: TransactionVerdict) -> bytes:
    """Bytes an issuer signs for a verdict (everything except issuer_sig)."""
    values: List[Any] = [
        verdict.target_id,
        verdict.tx_hash,
        verdict.outcome.value,
        verdict.details,
        verdict.metric,
        _normalize_number(verdict.issued_at),
        verdict.issuer_id,
        int(verdict.issuer_seq_no),
        verdict.tx_receipt,
        list(verdict.evidence_blobs) if verdict.evidence_blobs is not None else None,
    ]
    return msgpack.packb([VERDICT_ENCODING] + values, use_bin_type=True)


def payment_payload(message: SignedTransactionMessage) -> bytes:
    """Bytes a downloader signs for {from, to, amount, file_hash, nonce, deadline}."""
    values: List[Any] = [
        message.from_address,
        message.to,
        _normalize_number(message.amount),
        message.file_hash,
        message.nonce,
        _normalize_number(message.deadline),
    ]
    return msgpack.packb([PAYMENT_ENCODING] + values, use_bin_type=True)
