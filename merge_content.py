# merge_content.py
import copy
import math
import re
from dataclasses import dataclass
from numbers import Number

import pandas as pd
from docx.oxml import OxmlElement, parse_xml
from docx.oxml.ns import nsdecls, qn
from lxml import etree  # comes with python-docx

from mail_merge import W_NS, remove_node

# =========================
# Patterns & constants
# =========================
INLINE_ELEMENTS = {qn("w:r"), qn("w:hyperlink"), qn("w:ins"), qn("w:del")}
TEXT_PARTS_RE = re.compile(r"[^\n\t]+|\n|\t")

W_R = qn("w:r")
W_RPR = qn("w:rPr")
XML_SPACE = qn("xml:space")

_FRAGMENT_RUNS = etree.XPath(".//w:r", namespaces=W_NS)


@dataclass(frozen=True)
class MergePolicy:
    """Read-only switches consulted by ``field.replace``."""
    remove_fields_only: bool = False
    keep_merge_fields: bool = False
    inherit_styles: bool = False


# =========================
# Value normalization
# =========================
def to_text_value(v) -> str:
    if v is None:
        return ""
    if not isinstance(v, (list, tuple, dict)) and pd.isna(v):
        return ""
    if isinstance(v, bool):
        return str(v)
    if isinstance(v, Number):
        if isinstance(v, float) and not math.isfinite(v):
            return ""
        if float(v).is_integer():
            return str(int(v))
        s = f"{float(v):.12f}".rstrip("0").rstrip(".")
        return s or "0"
    s = str(v)
    m = re.fullmatch(r"([+-]?\d+)\.0+", s.strip())
    if m:
        return m.group(1)
    return s


# =========================
# Content kinds
# =========================
class TextContent:
    """Plain string; newlines become ``w:br`` and tabs ``w:tab``."""
    kind = "text"

    def __init__(self, value):
        self.string = to_text_value(value)

    def append_to(self, paragraph, display_node, policy):
        for part in reversed(TEXT_PARTS_RE.findall(self.string)):
            if part == "\n":
                node = OxmlElement("w:br")
            elif part == "\t":
                node = OxmlElement("w:tab")
            else:
                node = copy.deepcopy(display_node)
                node.tail = None
                node.text = part
                node.set(XML_SPACE, "preserve")
            display_node.addnext(node)

    def __repr__(self):
        return f"TextContent({self.string!r})"


class WordMLContent:
    """
    Raw WordprocessingML fragment, e.g. ``<w:p><w:r><w:t>Hi</w:t></w:r></w:p>``.

    Inline fragments (runs, hyperlinks, revisions) land inside the field's
    paragraph and pick up the display run's formatting; block fragments
    replace the whole paragraph.
    """
    kind = "wordml"

    def __init__(self, xml):
        if isinstance(xml, bytes):
            xml = xml.decode("utf-8")
        try:
            self.xml = parse_xml(f"<w:body {nsdecls('w', 'r')}>{xml}</w:body>")
        except etree.XMLSyntaxError as e:
            raise ValueError(f"WordML fragment is not well-formed: {e}") from e

    @property
    def all_inline(self) -> bool:
        return all(child.tag in INLINE_ELEMENTS for child in self.xml)

    def append_to(self, paragraph, display_node, policy):
        if self.all_inline:
            run = display_node.getparent()
            rpr = run.find(W_RPR)
            self._add_siblings_to(run, rpr)
            remove_node(run)
        else:
            if paragraph is None:
                raise RuntimeError("Block WordML content needs an enclosing paragraph")
            self._add_siblings_to(paragraph)
            remove_node(paragraph)

    def _add_siblings_to(self, node, rpr=None):
        for child in reversed(list(self.xml)):
            new = copy.deepcopy(child)
            new.tail = None
            if rpr is not None:
                _merge_rpr(new, rpr)
            node.addnext(new)

    def __repr__(self):
        return f"WordMLContent({len(self.xml)} elements)"


def _merge_rpr(node, template_rpr):
    """Add the template run properties a run does not set itself."""
    runs = [node] if node.tag == W_R else _FRAGMENT_RUNS(node)
    for run in runs:
        own = run.find(W_RPR)
        if own is None:
            own = OxmlElement("w:rPr")
            run.insert(0, own)
        for prop in template_rpr:
            if own.find(prop.tag) is None:
                own.append(copy.deepcopy(prop))


CONTENT_KINDS = {
    "text": TextContent,
    "wordml": WordMLContent,
}


def make_content(value, kind: str = "text"):
    if isinstance(value, (TextContent, WordMLContent)):
        return value
    k = (kind or "text").strip().lower()
    if k not in CONTENT_KINDS:
        raise ValueError(f"Unknown content kind: {kind!r}. Use one of {sorted(CONTENT_KINDS)}")
    if k == "wordml":
        return WordMLContent(to_text_value(value))
    return TextContent(value)
