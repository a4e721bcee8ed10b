# docx_merge.py
import argparse, re, sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

import pandas as pd
from rapidfuzz import fuzz, process
from docx import Document
from docx.parts.hdrftr import FooterPart, HeaderPart

from mail_merge import MergeField, SimpleField, parse_fields
from merge_content import MergePolicy, make_content

# =========================
# Patterns & constants
# =========================
FUZZ_THRESH = 86
STRUCTURED_COLS = {"field", "value"}

# =========================
# Normalization helpers
# =========================
def norm(s: str) -> str:
    return re.sub(r"[^a-z0-9]+", " ", str(s).strip().lower()).strip()

# =========================
# Table/CSV readers
# =========================
def _read_csv_with_fallbacks(path: Path) -> pd.DataFrame:
    encodings = ["utf-8", "utf-8-sig", "cp1252", "latin1"]
    last_err = None
    for enc in encodings:
        try:
            return pd.read_csv(path, dtype=str, encoding=enc, keep_default_na=False)
        except UnicodeDecodeError as e:
            last_err = e
    raise RuntimeError(f"Failed to read CSV with common encodings. Last error: {last_err}")

def _read_table_any(path: Path, sheet: Optional[str]) -> pd.DataFrame:
    ext = path.suffix.lower()
    if ext in [".xlsx", ".xls"]:
        return pd.read_excel(path, dtype=str, sheet_name=sheet or 0)
    elif ext == ".csv":
        return _read_csv_with_fallbacks(path)
    else:
        raise RuntimeError(f"Unsupported file extension: {ext}. Use .csv, .xlsx, or .xls")

def values_from_mapping(mapping: Dict, kinds: Optional[Dict[str, str]] = None, schema: str = "simple") -> Dict:
    """
    Build the lookup structure from ``{key: value}``; ``kinds`` marks keys
    whose value is a WordML fragment rather than plain text.
    """
    kinds = kinds or {}
    contents, by_norm = {}, {}
    for key, value in mapping.items():
        k = str(key).strip()
        contents[k] = make_content(value, kinds.get(k, "text"))
        by_norm.setdefault(norm(k), k)
    return {
        "schema": schema,
        "contents": contents,
        "by_norm": by_norm,
        "fuzz_keys": list(contents.keys()),
    }

def _load_structured_df(df: pd.DataFrame) -> Dict:
    # Expect columns: Field | Value [| Kind]
    df = df.fillna("")
    cols = {str(c).strip().lower(): c for c in df.columns}
    mapping, kinds = {}, {}
    for _, row in df.iterrows():
        key = str(row[cols["field"]]).strip()
        if not key:
            continue
        mapping[key] = row[cols["value"]]
        if "kind" in cols:
            kinds[key] = str(row[cols["kind"]]).strip() or "text"
    return values_from_mapping(mapping, kinds, schema="structured")

def _load_simple_df_row(df: pd.DataFrame, row_index: int) -> Dict:
    if row_index < 0 or row_index >= len(df.index):
        raise IndexError(f"Row {row_index} is out of range 0..{len(df.index)-1}")
    row = df.iloc[row_index].to_dict()
    return values_from_mapping({k: ("" if pd.isna(v) else v) for k, v in row.items()})

def load_table(csv_or_xlsx: Path, sheet: Optional[str], row_index: int) -> Dict:
    df0 = _read_table_any(csv_or_xlsx, sheet)
    cols = [str(c).strip().lower() for c in df0.columns.tolist()]
    if STRUCTURED_COLS.issubset(set(cols)):
        return _load_structured_df(df0)
    else:
        return _load_simple_df_row(df0, row_index)

# =========================
# Lookups
# =========================
def resolve_value(expression: str, values: Dict, fuzzy: bool = False):
    """Content for a field key: exact, then normalized, then (optionally) fuzzy."""
    contents = values["contents"]
    if expression in contents:
        return contents[expression]
    key = values["by_norm"].get(norm(expression))
    if key is not None:
        return contents[key]
    if fuzzy and values["fuzz_keys"]:
        choice = process.extractOne(expression, values["fuzz_keys"], scorer=fuzz.token_set_ratio,
                                    processor=norm)
        if choice and choice[1] >= FUZZ_THRESH:
            return contents[choice[0]]
    return None

# =========================
# Merge pipeline
# =========================
@dataclass
class MergeReport:
    replaced: List[str] = field(default_factory=list)
    unresolved: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.replaced or self.removed)

def field_kind(f: MergeField) -> str:
    return "simple" if isinstance(f, SimpleField) else "complex"

def iter_parts(doc: Document) -> Iterator[Tuple[str, object]]:
    """Main document first, then every header and footer part."""
    yield str(doc.part.partname), doc.element
    for part in doc.part.package.iter_parts():
        if isinstance(part, (HeaderPart, FooterPart)):
            yield str(part.partname), part.element

def merge_element(
        root,
        values: Dict,
        policy: MergePolicy,
        remove_unresolved: bool = False,
        fuzzy: bool = False,
        report: Optional[MergeReport] = None,
        part: str = "",
        verbose: bool = False
) -> MergeReport:
    report = report if report is not None else MergeReport()
    # discovery must finish before the tree is touched
    fields = parse_fields(root)
    for f in fields:
        content = resolve_value(f.expression, values, fuzzy=fuzzy)
        if content is None:
            if remove_unresolved:
                f.remove()
                report.removed.append(f.expression)
                if verbose:
                    print(f"[DOCX] {part}: '{f.expression}' → removed (no value)")
            else:
                report.unresolved.append(f.expression)
                if verbose:
                    print(f"[DOCX] {part}: '{f.expression}' → (no value; leave as-is)")
            continue
        f.replace(content, policy)
        report.replaced.append(f.expression)
        if verbose:
            print(f"[DOCX] {part}: '{f.expression}' → {content!r}")
    return report

def merge_document(
        doc: Document,
        values: Dict,
        policy: MergePolicy,
        remove_unresolved: bool = False,
        fuzzy: bool = False,
        verbose: bool = False
) -> MergeReport:
    report = MergeReport()
    for partname, root in iter_parts(doc):
        merge_element(root, values, policy, remove_unresolved, fuzzy, report, partname, verbose)
    return report

def list_fields(doc: Document) -> List[Dict[str, str]]:
    out = []
    for partname, root in iter_parts(doc):
        for f in parse_fields(root):
            out.append({
                "part": partname,
                "kind": field_kind(f),
                "expression": f.expression,
                "raw_expression": f.raw_expression,
            })
    return out

def process_docx(
        doc_path,
        values: Dict,
        policy: MergePolicy,
        remove_unresolved: bool = False,
        fuzzy: bool = False,
        verbose: bool = False
) -> Tuple[Document, MergeReport]:
    doc = Document(doc_path)
    report = merge_document(doc, values, policy, remove_unresolved, fuzzy, verbose)
    return doc, report

# =========================
# CLI
# =========================
def _dry_run(doc_path: Path, values: Dict, fuzzy: bool):
    doc = Document(doc_path)
    fields = list_fields(doc)
    print(f"[DRY] Discovered fields: {len(fields)}")
    for f in fields:
        content = resolve_value(f["expression"], values, fuzzy=fuzzy)
        shown = repr(content) if content is not None else "(no value)"
        print(f"  • {f['expression']} | {f['kind']} | {f['part']} → {shown}")
    print("Dry-run complete. No file written.")

def main():
    ap = argparse.ArgumentParser(description="Fill MERGEFIELDs in a .docx from CSV/Excel (structured or simple).")
    ap.add_argument("--doc", "--input", dest="doc", required=True, help="Input DOCX template")
    ap.add_argument("--csv", required=True, help="CSV/XLSX/XLS with values")
    ap.add_argument("--sheet", default=None, help="Worksheet name for Excel files (optional)")
    ap.add_argument("--row", type=int, default=0, help="Row index for simple CSV (ignored for structured)")
    ap.add_argument("--out", "--output", dest="out", help="Output DOCX path")
    ap.add_argument("--keep-merge-fields", action="store_true", help="Keep field markup next to the injected content")
    ap.add_argument("--remove-fields-only", action="store_true",
                    help="Strip field markup; drop paragraphs of WordML fields")
    ap.add_argument("--inherit-styles", action="store_true",
                    help="WordML paragraphs take the template paragraph's properties")
    ap.add_argument("--remove-unresolved", action="store_true", help="Delete fields whose key has no value")
    ap.add_argument("--fuzzy", action="store_true", help="Fuzzy-match field keys against column names")
    ap.add_argument("--dry-run", action="store_true", help="List fields and their values; write nothing")
    ap.add_argument("--verbose", action="store_true", help="Print every replacement")
    args = ap.parse_args()

    if not args.dry_run and not args.out:
        ap.error("--out is required unless --dry-run is given")

    try:
        values = load_table(Path(args.csv), sheet=args.sheet, row_index=args.row)
    except (RuntimeError, IndexError, ValueError, OSError) as e:
        print(f"[CSV/Excel] {e}", file=sys.stderr); sys.exit(2)

    policy = MergePolicy(
        remove_fields_only=args.remove_fields_only,
        keep_merge_fields=args.keep_merge_fields,
        inherit_styles=args.inherit_styles,
    )

    try:
        if args.dry_run:
            _dry_run(Path(args.doc), values, args.fuzzy)
            return
        out_doc, report = process_docx(Path(args.doc), values, policy,
                                       remove_unresolved=args.remove_unresolved,
                                       fuzzy=args.fuzzy, verbose=args.verbose)
        out_doc.save(args.out)
        print(f"🧭 Fields replaced: {len(report.replaced)}, unresolved: {len(report.unresolved)}, "
              f"removed: {len(report.removed)}")
        print(f"✅ Wrote {args.out}")
    except Exception as e:
        print(f"[DOCX] {e}", file=sys.stderr); sys.exit(3)

if __name__ == "__main__":
    main()
