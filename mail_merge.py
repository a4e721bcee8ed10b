# mail_merge.py
import copy
import re
from typing import Iterator, List, Optional

from docx.oxml.ns import nsmap, qn
from lxml import etree  # comes with python-docx

# =========================
# Patterns & constants
# =========================
KEY_PATTERN = re.compile(r"^\s*MERGEFIELD\s+(\S+)\s+\\\*\s+MERGEFORMAT\s*$")

W_NS = {"w": nsmap["w"]}

_RUNS = etree.XPath(".//w:r", namespaces=W_NS)
_TEXTS = etree.XPath(".//w:t", namespaces=W_NS)
_INSTR_TEXTS = etree.XPath(".//w:instrText", namespaces=W_NS)
_FLD_SEPARATE = etree.XPath(".//w:fldChar[@w:fldCharType='separate']", namespaces=W_NS)
_FLD_END = etree.XPath(".//w:fldChar[@w:fldCharType='end']", namespaces=W_NS)

W_P = qn("w:p")
W_PPR = qn("w:pPr")
W_FLD_SIMPLE = qn("w:fldSimple")
W_FLD_CHAR = qn("w:fldChar")
W_FLD_CHAR_TYPE = qn("w:fldCharType")
W_INSTR = qn("w:instr")


# =========================
# Validity rule
# =========================
def field_expression(raw: Optional[str]) -> Optional[str]:
    """Key of a ``MERGEFIELD <key> \\* MERGEFORMAT`` instruction, else None."""
    if not raw:
        return None
    m = KEY_PATTERN.match(raw)
    return m.group(1) if m else None


def is_merge_field(raw: Optional[str]) -> bool:
    return field_expression(raw) is not None


# =========================
# Tree helpers (namespace-aware)
# =========================
def _is_element(node) -> bool:
    # comments and processing instructions have a callable tag
    return isinstance(node.tag, str)


def _next_element(node):
    nxt = node.getnext()
    while nxt is not None and not _is_element(nxt):
        nxt = nxt.getnext()
    return nxt


def _iter_following(node) -> Iterator:
    nxt = _next_element(node)
    while nxt is not None:
        yield nxt
        nxt = _next_element(nxt)


def _ancestor(node, tag: str):
    for anc in node.iterancestors(tag):
        return anc
    return None


def _first(results):
    return results[0] if results else None


def remove_node(node):
    parent = node.getparent()
    if parent is None:
        return
    # keep the tail text attached to the document
    if node.tail:
        prev = node.getprevious()
        if prev is not None:
            prev.tail = (prev.tail or "") + node.tail
        else:
            parent.text = (parent.text or "") + node.tail
    parent.remove(node)


def _unwrap(node):
    """Replace ``node`` with its own children."""
    parent = node.getparent()
    if parent is None:
        return
    if node.text:
        prev = node.getprevious()
        if prev is not None:
            prev.tail = (prev.tail or "") + node.text
        else:
            parent.text = (parent.text or "") + node.text
    for child in list(node):
        node.addprevious(child)
    remove_node(node)


def get_display_node(node):
    """First displayable text (``w:t``) under ``node``."""
    if node is None:
        return None
    return _first(_TEXTS(node))


# =========================
# Fields
# =========================
class MergeField:
    raw_expression: Optional[str] = None

    @property
    def expression(self) -> Optional[str]:
        return field_expression(self.raw_expression)

    @property
    def valid(self) -> bool:
        return self.expression is not None

    def ancestors(self, tag: str = W_P) -> List:
        return list(self.start_node.iterancestors(tag))

    def __repr__(self):
        return f"<{type(self).__name__} {self.raw_expression!r}>"


def replace_field_display(node, content, policy):
    """
    Anchor ``content`` at the first ``w:t`` of ``node`` inside its paragraph,
    then drop that stale display node.
    """
    paragraph = _ancestor(node, W_P)
    display_node = get_display_node(node)
    content.append_to(paragraph, display_node, policy)
    remove_node(display_node)


class SimpleField(MergeField):
    """``<w:fldSimple w:instr="...">`` with its result runs inside."""

    def __init__(self, node):
        self.node = node
        self.raw_expression = node.get(W_INSTR)

    @property
    def start_node(self):
        return self.node

    @property
    def end_node(self):
        return self.node

    @property
    def nodes(self) -> List:
        return [self.node]

    @property
    def valid(self) -> bool:
        return get_display_node(self.node) is not None and self.expression is not None

    def replace(self, content, policy):
        self._remove_extra_runs()
        if content.kind == "wordml":
            template_paragraph = _ancestor(self.node, W_P)
            if policy.remove_fields_only:
                if template_paragraph is not None:
                    remove_node(template_paragraph)
            elif template_paragraph is not None:
                if policy.keep_merge_fields:
                    template_paragraph.addprevious(copy.deepcopy(template_paragraph))
                if policy.inherit_styles:
                    inherit_template_styles(content, template_paragraph)
        if not policy.remove_fields_only:
            replace_field_display(self.node, content, policy)
        if not policy.keep_merge_fields:
            _unwrap(self.node)

    def remove(self):
        remove_node(self.node)

    def _remove_extra_runs(self):
        for run in _RUNS(self.node)[1:]:
            remove_node(run)


class ComplexField(MergeField):
    """
    Sibling span from the run holding ``fldChar begin`` through the run
    holding ``fldChar end``:

        begin | instrText ... | separate | display run(s) | end
    """

    def __init__(self, nodes: List):
        self.nodes = list(nodes)
        self.raw_expression = "".join(
            instr.text or "" for n in self.nodes for instr in _INSTR_TEXTS(n)
        )

    @property
    def start_node(self):
        return self.nodes[0]

    @property
    def end_node(self):
        return self.nodes[-1]

    @property
    def valid(self) -> bool:
        pattern = self.pattern_node
        return (
            len(self.nodes) >= 2
            and pattern is not None
            and any(n is pattern for n in self.nodes)
            and get_display_node(pattern) is not None
            and self.expression is not None
        )

    @property
    def separate_node(self):
        for n in self.nodes:
            if _FLD_SEPARATE(n):
                return n
        return None

    @property
    def pattern_node(self):
        sep = self.separate_node
        return _next_element(sep) if sep is not None else None

    def replace(self, content, policy):
        pattern = self.pattern_node
        if pattern is None:
            raise RuntimeError(f"Field {self.raw_expression!r} lost its display run before replacement")
        replace_field_display(pattern, content, policy)
        for n in self.nodes:
            if n is not pattern:
                remove_node(n)

    def remove(self):
        for n in self.nodes:
            remove_node(n)


# =========================
# Style inheritance
# =========================
def inherit_template_styles(content, template_paragraph):
    """
    Give every paragraph of a WordML fragment the template paragraph's
    ``w:pPr``, replacing whatever properties the fragment carried.
    """
    template_props = template_paragraph.find(W_PPR)
    if template_props is None:
        return
    for paragraph in content.xml.iterchildren(W_P):
        own = paragraph.find(W_PPR)
        if own is not None:
            paragraph.remove(own)
        paragraph.insert(0, copy.deepcopy(template_props))


# =========================
# Locator
# =========================
def build_complex_field(node) -> Optional[ComplexField]:
    """
    Scan forward from the container of a ``begin`` marker until a sibling
    holds the ``end`` marker. No end marker, no field.
    """
    current = node.getparent()
    if current is None:
        return None
    field_nodes = [current]
    following = _iter_following(current)
    while not _FLD_END(current):
        current = next(following, None)
        if current is None:
            return None
        field_nodes.append(current)
    return ComplexField(field_nodes)


def parse_fields(root) -> List[MergeField]:
    """
    Valid merge fields under ``root`` in document order.
    Read-only: finish discovery before replacing anything.
    """
    fields: List[MergeField] = []
    for node in root.iter(W_FLD_SIMPLE, W_FLD_CHAR):
        field = None
        if node.tag == W_FLD_SIMPLE:
            field = SimpleField(node)
        elif node.get(W_FLD_CHAR_TYPE) == "begin":
            field = build_complex_field(node)
        if field is not None and field.valid:
            fields.append(field)
    return fields
