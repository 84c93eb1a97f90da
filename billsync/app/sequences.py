"""
Document number allocation.

One row per (company, document_type, financial_year). The counter is advanced
with a single UPDATE ... RETURNING, which takes the row lock, so two concurrent
allocations can never observe the same current_number. The increment runs in the
caller's transaction: if the caller rolls back, so does the counter.
"""
from datetime import date
from typing import Optional

from .errors import PersistenceError

DEFAULT_PREFIXES = {
    "invoice": "INV-",
    "quote": "QUO-",
    "sales_order": "SO-",
    "purchase_order": "PO-",
    "bill": "BILL-",
    "payment_received": "PR-",
    "payment_made": "PM-",
    "credit_note": "CN-",
    "debit_note": "DN-",
    "grn": "GRN-",
}
DOCUMENT_TYPES = tuple(DEFAULT_PREFIXES.keys())
DEFAULT_PADDING = 4


def current_financial_year(today: Optional[date] = None) -> str:
    # Financial year starts in April: 2026-04-01 .. 2027-03-31 is "2026-27".
    d = today or date.today()
    start = d.year if d.month >= 4 else d.year - 1
    return f"{start}-{str(start + 1)[-2:]}"


def _clamp_padding(v) -> int:
    try:
        n = int(v)
    except (TypeError, ValueError):
        n = DEFAULT_PADDING
    return max(1, min(10, n))


def financial_year_tag(financial_year: str) -> str:
    # "2026-27" -> "26-27"
    return str(financial_year)[2:]


def format_document_number(seq: dict, number: int) -> str:
    """
    prefix + zero-padded number + suffix. Sequences that restart every year also
    carry the financial year ("INV-0001/26-27"), so numbers from different years
    never collide.
    """
    padded = str(int(number)).zfill(_clamp_padding(seq.get("padding_zeros")))
    out = f"{seq.get('prefix') or ''}{padded}{seq.get('suffix') or ''}"
    if seq.get("reset_yearly") and seq.get("financial_year"):
        out += f"/{financial_year_tag(seq['financial_year'])}"
    return out


def default_sequence(document_type: str, financial_year: str) -> dict:
    return {
        "document_type": document_type,
        "financial_year": financial_year,
        "prefix": DEFAULT_PREFIXES.get(document_type, "DOC-"),
        "suffix": "",
        "padding_zeros": DEFAULT_PADDING,
        "current_number": 1,
        "reset_yearly": True,
        "is_active": True,
    }


def sample_format(seq: dict) -> str:
    return format_document_number(seq, seq.get("current_number") or 1)


def _latest_prior_sequence(cur, company_id: str, document_type: str, financial_year: str):
    cur.execute(
        """
        SELECT prefix, suffix, padding_zeros, current_number, reset_yearly, financial_year
        FROM document_sequences
        WHERE company_id = %s AND document_type = %s AND financial_year < %s
        ORDER BY financial_year DESC
        LIMIT 1
        """,
        (company_id, document_type, financial_year),
    )
    return cur.fetchone()


def _ensure_sequence_row(cur, company_id: str, document_type: str, financial_year: str) -> None:
    cur.execute(
        """
        SELECT id FROM document_sequences
        WHERE company_id = %s AND document_type = %s AND financial_year = %s
        """,
        (company_id, document_type, financial_year),
    )
    if cur.fetchone():
        return

    seed = default_sequence(document_type, financial_year)
    prior = _latest_prior_sequence(cur, company_id, document_type, financial_year)
    if prior:
        seed.update(
            prefix=prior["prefix"] or "",
            suffix=prior["suffix"] or "",
            padding_zeros=_clamp_padding(prior["padding_zeros"]),
            reset_yearly=bool(prior["reset_yearly"]),
        )
        if not prior["reset_yearly"]:
            # Continuous numbering across years.
            seed["current_number"] = int(prior["current_number"] or 1)

    # Racing creators both land here; the unique key keeps exactly one row.
    cur.execute(
        """
        INSERT INTO document_sequences
          (id, company_id, document_type, financial_year, prefix, suffix, padding_zeros, current_number, reset_yearly)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (company_id, document_type, financial_year) DO NOTHING
        """,
        (
            company_id,
            document_type,
            financial_year,
            seed["prefix"],
            seed["suffix"],
            seed["padding_zeros"],
            seed["current_number"],
            seed["reset_yearly"],
        ),
    )


def allocate(cur, company_id: str, document_type: str, *, today: Optional[date] = None) -> str:
    financial_year = current_financial_year(today)
    _ensure_sequence_row(cur, company_id, document_type, financial_year)
    cur.execute(
        """
        UPDATE document_sequences
        SET current_number = current_number + 1,
            updated_at = now()
        WHERE company_id = %s AND document_type = %s AND financial_year = %s
        RETURNING current_number - 1 AS issued_number, prefix, suffix, padding_zeros,
                  reset_yearly, financial_year
        """,
        (company_id, document_type, financial_year),
    )
    row = cur.fetchone()
    if not row:
        raise PersistenceError(f"document sequence missing for {document_type} {financial_year}")
    return format_document_number(row, row["issued_number"])


def list_sequences(cur, company_id: str, financial_year: Optional[str] = None) -> list[dict]:
    fy = financial_year or current_financial_year()
    cur.execute(
        """
        SELECT id, document_type, financial_year, prefix, suffix, padding_zeros,
               current_number, reset_yearly, is_active, updated_at
        FROM document_sequences
        WHERE company_id = %s AND financial_year = %s
        ORDER BY document_type
        """,
        (company_id, fy),
    )
    existing = {r["document_type"]: r for r in cur.fetchall()}
    out = []
    for doc_type in sorted(set(DOCUMENT_TYPES) | set(existing.keys())):
        seq = dict(existing.get(doc_type) or default_sequence(doc_type, fy))
        seq["sample_format"] = sample_format(seq)
        seq["saved"] = doc_type in existing
        out.append(seq)
    return out


def preview_next(cur, company_id: str, document_type: str, *, today: Optional[date] = None) -> dict:
    fy = current_financial_year(today)
    cur.execute(
        """
        SELECT id, document_type, financial_year, prefix, suffix, padding_zeros,
               current_number, reset_yearly, is_active, updated_at
        FROM document_sequences
        WHERE company_id = %s AND document_type = %s AND financial_year = %s
        """,
        (company_id, document_type, fy),
    )
    seq = cur.fetchone()
    if not seq:
        seq = default_sequence(document_type, fy)
        prior = _latest_prior_sequence(cur, company_id, document_type, fy)
        if prior:
            seq.update(
                prefix=prior["prefix"] or "",
                suffix=prior["suffix"] or "",
                padding_zeros=prior["padding_zeros"],
                reset_yearly=bool(prior["reset_yearly"]),
            )
            if not prior["reset_yearly"]:
                seq["current_number"] = int(prior["current_number"] or 1)
    return {
        "document_type": document_type,
        "financial_year": fy,
        "next_number": int(seq["current_number"] or 1),
        "preview": format_document_number(seq, seq["current_number"] or 1),
    }


def save_sequences(cur, company_id: str, sequences: list[dict], *, financial_year: Optional[str] = None) -> dict:
    """
    Upsert numbering configuration on (company, document_type, financial_year).

    Only presentation fields and the reset policy are written. A requested
    current_number can move the counter forward but never back, so numbers
    already issued can't be handed out again.
    """
    fy = financial_year or current_financial_year()
    saved: list[dict] = []
    errors: list[str] = []
    for i, seq in enumerate(sequences or []):
        doc_type = str(seq.get("document_type") or "").strip().lower()
        if not doc_type:
            errors.append(f"Sequence {i + 1}: Missing document type")
            continue
        try:
            requested = max(1, int(seq.get("current_number") or 1))
        except (TypeError, ValueError):
            errors.append(f"{doc_type}: invalid current_number")
            continue
        cur.execute(
            """
            INSERT INTO document_sequences
              (id, company_id, document_type, financial_year, prefix, suffix, padding_zeros, current_number, reset_yearly)
            VALUES
              (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (company_id, document_type, financial_year) DO UPDATE
            SET prefix = EXCLUDED.prefix,
                suffix = EXCLUDED.suffix,
                padding_zeros = EXCLUDED.padding_zeros,
                reset_yearly = EXCLUDED.reset_yearly,
                current_number = GREATEST(document_sequences.current_number, EXCLUDED.current_number),
                updated_at = now()
            RETURNING id, document_type, financial_year, prefix, suffix, padding_zeros, current_number, reset_yearly
            """,
            (
                company_id,
                doc_type,
                fy,
                str(seq.get("prefix") or ""),
                str(seq.get("suffix") or ""),
                _clamp_padding(seq.get("padding_zeros")),
                requested,
                bool(seq.get("reset_yearly", True)),
            ),
        )
        row = dict(cur.fetchone())
        row["sample_format"] = sample_format(row)
        saved.append(row)
    return {"saved": saved, "errors": errors, "financial_year": fy}
