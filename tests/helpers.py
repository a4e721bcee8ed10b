from docx.oxml import parse_xml
from docx.oxml.ns import nsdecls, qn

MERGE = r"\* MERGEFORMAT"


def body(inner: str):
    return parse_xml(f"<w:body {nsdecls('w')}>{inner}</w:body>")


def simple_field(key: str, display: str = None, runs: int = 1) -> str:
    display = display if display is not None else f"«{key}»"
    rs = "".join(f"<w:r><w:t>{display if i == 0 else 'dup'}</w:t></w:r>" for i in range(runs))
    return f'<w:fldSimple w:instr=" MERGEFIELD {key} {MERGE} ">{rs}</w:fldSimple>'


def complex_runs(key: str, display: str = None, instr_parts=None) -> str:
    display = display if display is not None else f"«{key}»"
    parts = instr_parts or [f" MERGEFIELD {key} {MERGE} "]
    instr = "".join(f'<w:r><w:instrText xml:space="preserve">{p}</w:instrText></w:r>' for p in parts)
    return (
        '<w:r><w:fldChar w:fldCharType="begin"/></w:r>'
        f"{instr}"
        '<w:r><w:fldChar w:fldCharType="separate"/></w:r>'
        f"<w:r><w:t>{display}</w:t></w:r>"
        '<w:r><w:fldChar w:fldCharType="end"/></w:r>'
    )


def texts(root):
    return [t.text for t in root.iter(qn("w:t"))]


def count(root, tag: str) -> int:
    return sum(1 for _ in root.iter(qn(tag)))
