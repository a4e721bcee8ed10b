# main.py
from fastapi import FastAPI, UploadFile, File, Form, HTTPException
from fastapi.responses import StreamingResponse
from docx import Document
import io
import json
from typing import List, Dict, Any

from docx_merge import list_fields, merge_document, values_from_mapping
from merge_content import MergePolicy

app = FastAPI(title="DOCX Mail Merge")

DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


async def _open_docx(upload: UploadFile) -> Document:
    name = (upload.filename or "").lower()
    if upload.content_type != DOCX_MIME and not name.endswith(".docx"):
        raise HTTPException(status_code=400, detail="File must be a DOCX")
    data = await upload.read()
    try:
        return Document(io.BytesIO(data))
    except Exception as e:
        raise HTTPException(status_code=400, detail=f"Could not open DOCX: {e}")


def _json_object(raw: str, name: str) -> Dict[str, Any]:
    try:
        obj = json.loads(raw) if raw else {}
        if not isinstance(obj, dict):
            raise ValueError(f"{name} must be a JSON object")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid {name}: {e}")
    return obj


@app.post("/fields")
async def fields(docx: UploadFile = File(...)):
    """
    List the merge fields found in the document:
    [{ "part": "/word/document.xml", "kind": "simple", "expression": "Name",
       "raw_expression": " MERGEFIELD Name \\* MERGEFORMAT " }]
    """
    doc = await _open_docx(docx)
    found: List[Dict[str, str]] = list_fields(doc)
    return {"success": True, "fields": found}


@app.post("/merge")
async def merge(
    docx: UploadFile = File(...),
    values: str = Form(...),
    kinds: str = Form(""),
    remove_fields_only: bool = Form(False),
    keep_merge_fields: bool = Form(False),
    inherit_styles: bool = Form(False),
    remove_unresolved: bool = Form(False),
    fuzzy: bool = Form(False),
):
    """
    Receive a DOCX template and a JSON object of values, e.g.
    values = {"Name": "Ada", "Body": "<w:p>...</w:p>"}, kinds = {"Body": "wordml"}.
    Returns the merged DOCX for download.
    """
    doc = await _open_docx(docx)
    mapping = _json_object(values, "values")
    kind_map = _json_object(kinds, "kinds")

    try:
        lookup = values_from_mapping(mapping, kind_map)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    policy = MergePolicy(
        remove_fields_only=remove_fields_only,
        keep_merge_fields=keep_merge_fields,
        inherit_styles=inherit_styles,
    )
    report = merge_document(doc, lookup, policy, remove_unresolved=remove_unresolved, fuzzy=fuzzy)

    # Save to bytes
    out = io.BytesIO()
    doc.save(out)
    out.seek(0)

    headers = {
        "Content-Disposition": "attachment; filename=merged.docx",
        "X-Merge-Replaced": str(len(report.replaced)),
        "X-Merge-Unresolved": str(len(report.unresolved)),
    }
    return StreamingResponse(out, media_type=DOCX_MIME, headers=headers)


# Simple root
@app.get("/")
async def root():
    return {"message": "DOCX Mail Merge API. Use /fields and /merge endpoints."}
