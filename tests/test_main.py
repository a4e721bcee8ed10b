import io
import json

import pytest
from docx import Document
from docx.oxml import parse_xml
from docx.oxml.ns import nsdecls
from fastapi.testclient import TestClient

from main import DOCX_MIME, app

from helpers import MERGE

client = TestClient(app)


@pytest.fixture
def docx_bytes():
    doc = Document()
    p = doc.add_paragraph("Hello ")
    p._p.append(parse_xml(
        f'<w:fldSimple {nsdecls("w")} w:instr=" MERGEFIELD Name {MERGE} ">'
        "<w:r><w:t>«Name»</w:t></w:r></w:fldSimple>"
    ))
    doc.add_paragraph("")._p.append(parse_xml(
        f'<w:fldSimple {nsdecls("w")} w:instr=" MERGEFIELD Missing {MERGE} ">'
        "<w:r><w:t>«Missing»</w:t></w:r></w:fldSimple>"
    ))
    buf = io.BytesIO()
    doc.save(buf)
    return buf.getvalue()


def _upload(data: bytes, name: str = "letter.docx", mime: str = DOCX_MIME):
    return {"docx": (name, data, mime)}


def test_root():
    r = client.get("/")
    assert r.status_code == 200
    assert "/merge" in r.json()["message"]


def test_fields(docx_bytes):
    r = client.post("/fields", files=_upload(docx_bytes))
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert [f["expression"] for f in body["fields"]] == ["Name", "Missing"]
    assert body["fields"][0]["kind"] == "simple"


def test_fields_rejects_non_docx():
    r = client.post("/fields", files=_upload(b"%PDF-1.4", name="form.pdf", mime="application/pdf"))
    assert r.status_code == 400


def test_fields_rejects_corrupt_docx():
    r = client.post("/fields", files=_upload(b"not a zip"))
    assert r.status_code == 400


def test_merge(docx_bytes):
    r = client.post(
        "/merge",
        files=_upload(docx_bytes),
        data={"values": json.dumps({"Name": "Ada"})},
    )
    assert r.status_code == 200
    assert r.headers["content-type"] == DOCX_MIME
    assert r.headers["x-merge-replaced"] == "1"
    assert r.headers["x-merge-unresolved"] == "1"
    merged = Document(io.BytesIO(r.content))
    assert merged.paragraphs[0].text == "Hello Ada"


def test_merge_wordml_and_remove_unresolved(docx_bytes):
    r = client.post(
        "/merge",
        files=_upload(docx_bytes),
        data={
            "values": json.dumps({"Name": "<w:r><w:t>Ada</w:t></w:r>"}),
            "kinds": json.dumps({"Name": "wordml"}),
            "remove_unresolved": "true",
        },
    )
    assert r.status_code == 200
    assert r.headers["x-merge-unresolved"] == "0"
    merged = Document(io.BytesIO(r.content))
    assert merged.paragraphs[0].text == "Hello Ada"
    assert "«Missing»" not in merged.element.xml


@pytest.mark.parametrize("values", ["{not json", "[1, 2]"])
def test_merge_rejects_bad_values(docx_bytes, values):
    r = client.post("/merge", files=_upload(docx_bytes), data={"values": values})
    assert r.status_code == 400


def test_merge_rejects_bad_wordml(docx_bytes):
    r = client.post(
        "/merge",
        files=_upload(docx_bytes),
        data={"values": json.dumps({"Name": "<w:r>"}), "kinds": json.dumps({"Name": "wordml"})},
    )
    assert r.status_code == 400
