from typing import Any, Optional

from fastapi import APIRouter
from pydantic import BaseModel

from .. import sequences
from ..db import get_conn
from ..errors import ValidationError
from ..validation import DocumentType

router = APIRouter(prefix="/settings/document-numbering", tags=["settings"])


class SequencesIn(BaseModel):
    company_id: str
    financial_year: Optional[str] = None
    sequences: list[dict[str, Any]]


@router.get("")
def get_document_numbering(
    company_id: str,
    action: Optional[str] = None,
    document_type: Optional[DocumentType] = None,
    financial_year: Optional[str] = None,
):
    with get_conn() as conn:
        with conn.cursor() as cur:
            if action == "preview":
                if not document_type:
                    raise ValidationError("document_type is required for preview")
                return {"success": True, "data": sequences.preview_next(cur, company_id, document_type)}
            data = sequences.list_sequences(cur, company_id, financial_year)
    return {"success": True, "data": data}


@router.post("")
def save_document_numbering(data: SequencesIn):
    if not data.sequences:
        raise ValidationError("Sequences array is required")
    with get_conn() as conn:
        with conn.cursor() as cur:
            result = sequences.save_sequences(cur, data.company_id, data.sequences, financial_year=data.financial_year)
    return {
        "success": not result["errors"],
        "message": f"{len(result['saved'])} sequences saved",
        "data": result["saved"],
        "errors": result["errors"],
        "financial_year": result["financial_year"],
    }
